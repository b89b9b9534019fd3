#!/usr/bin/env python3
"""Validate a detection rule document and print a summary."""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from m365guard.analyzer.rule_store import (
    FileRuleSource,
    HttpRuleSource,
    RuleStore,
    decode_rule_document,
    validate_rule_document,
)
from m365guard.errors import RuleLoadError


async def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("source", nargs="?", default="config/detection-rules.json", help="Path or URL")
    parser.add_argument("--timeout", type=float, default=10.0)
    args = parser.parse_args()

    if args.source.startswith(("http://", "https://")):
        source = HttpRuleSource(args.source, timeout=args.timeout)
    else:
        source = FileRuleSource(Path(args.source))

    print(f"Checking rules from: {source.name}")
    print("=" * 60)

    try:
        raw = await source.fetch()
        data = decode_rule_document(raw, source.name)
        document = await RuleStore(source, timeout=args.timeout).load()
    except RuleLoadError as e:
        print(f"FAILED: {e}")
        return 2
    except OSError as e:
        print(f"FAILED: {e}")
        return 2

    summary = document.summary()
    for key, value in summary.items():
        print(f"  {key}: {value}")

    issues = validate_rule_document(data)
    if not issues:
        print("\nNo issues found.")
        return 0

    print(f"\n{len(issues)} issue(s):")
    for issue in issues:
        print(f"  - {issue}")
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
