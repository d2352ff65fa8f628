#!/usr/bin/env python3
"""
Kubez Annotation Linter
-----------------------

Offline check of workload manifests before they reach the cluster. For every
Deployment / StatefulSet / ReplicationController in the given YAML files
(multi-document files supported, "-" reads stdin) it prints the parsed
scaling policy and the HorizontalPodAutoscaler the controller would create.

Example usage:
  python3 tools/annotation_lint.py deploy/web.yaml
  kubectl get deploy web -o yaml | python3 tools/annotation_lint.py -
  python3 tools/annotation_lint.py --root hpa.example.com manifests/*.yaml

Exit codes:
  0 = at least one valid policy, no invalid ones
  1 = no workload carries autoscaling annotations
  2 = invalid annotations (or unreadable input)
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import yaml

from kubez.annotations import AnnotationKeys, ScalingPolicy, ValidationError, parse_annotations
from kubez.config import DEFAULT_ANNOTATION_ROOT
from kubez.hpa import build_autoscaler
from kubez.k8s import WorkloadKind, WorkloadRef

EXIT_OK = 0
EXIT_NO_POLICY = 1
EXIT_INVALID = 2

@dataclass
class LintResult:
    source: WorkloadRef
    policy: Optional[ScalingPolicy] = None
    error: Optional[ValidationError] = None

    @property
    def label(self) -> str:
        return f"{self.source.kind.value} {self.source.namespace}/{self.source.name}"

def lint_documents(docs: Iterable[Any], keys: AnnotationKeys) -> List[LintResult]:
    results: List[LintResult] = []
    for doc in docs:
        if not isinstance(doc, dict):
            continue
        try:
            kind = WorkloadKind(doc.get("kind"))
        except ValueError:
            continue
        m = doc.get("metadata") or {}
        ref = WorkloadRef(
            kind=kind,
            namespace=m.get("namespace") or "default",
            name=m.get("name") or "",
            uid=m.get("uid") or "",
            annotations={str(k): str(v) for k, v in (m.get("annotations") or {}).items()},
        )
        try:
            results.append(LintResult(ref, policy=parse_annotations(ref.annotations, keys)))
        except ValidationError as e:
            results.append(LintResult(ref, error=e))
    return results

def exit_code(results: List[LintResult]) -> int:
    if any(r.error for r in results):
        return EXIT_INVALID
    if any(r.policy for r in results):
        return EXIT_OK
    return EXIT_NO_POLICY

def report(results: List[LintResult], show_hpa: bool = True, out=sys.stdout):
    for r in results:
        if r.error:
            print(f"[INVALID] {r.label}: {r.error}", file=out)
        elif r.policy is None:
            print(f"[SKIP] {r.label}: no autoscaling annotations", file=out)
        else:
            print(f"[OK] {r.label}: {r.policy.describe()}", file=out)
            if show_hpa:
                out.write(yaml.safe_dump(build_autoscaler(r.policy, r.source), sort_keys=False))
                print("---", file=out)

def _load(path: str) -> List[Any]:
    if path == "-":
        return list(yaml.safe_load_all(sys.stdin))
    with open(path, "r", encoding="utf-8") as fh:
        return list(yaml.safe_load_all(fh))

def _build_cli() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kubez-annotation-lint", description="Validate kubez autoscaling annotations offline")
    p.add_argument("files", nargs="+", help="YAML manifests ('-' for stdin)")
    p.add_argument("--root", default=DEFAULT_ANNOTATION_ROOT, help="Annotation root prefix")
    p.add_argument("--quiet", action="store_true", help="Do not print generated HPAs")
    return p

def main(argv: Optional[List[str]] = None) -> int:
    args = _build_cli().parse_args(argv)
    docs: List[Any] = []
    for path in args.files:
        try:
            docs.extend(_load(path))
        except (OSError, yaml.YAMLError) as e:
            print(f"[ERROR] {path}: {e}", file=sys.stderr)
            return EXIT_INVALID
    results = lint_documents(docs, AnnotationKeys(args.root))
    report(results, show_hpa=not args.quiet)
    return exit_code(results)

if __name__ == "__main__":
    sys.exit(main())
