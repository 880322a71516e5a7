#!/usr/bin/env python3
"""
Order email ingestion - CLI entry point.

Usage:
  python run.py                                 # Process ./input, output to ./output
  python run.py --input emails --output ./output
  python run.py --input ./input --no-llm-fallback   # Rule-based parser only
  python run.py --input ./input --store ./drafts    # Also merge resolved orders into drafts

Each input file is an OrderRequest JSON (email body, subject, sender, client catalog and
registered branches). One <name>_parsed.json is written per email.
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from order_ingest.config import settings
from order_ingest.pipeline import run_on_folder
from order_ingest.store import JsonDraftStore


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Parse order emails into per-branch product lines and cumulative drafts."
    )
    parser.add_argument(
        "--input",
        "-i",
        type=str,
        default="./input",
        help="Input directory containing OrderRequest JSON files (default: ./input)",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=str,
        default="./output",
        help="Output directory for parsed JSON files (default: ./output)",
    )
    parser.add_argument(
        "--no-llm-fallback",
        action="store_true",
        help="Disable the AI fallback when the rule-based parser finds no matched branch",
    )
    parser.add_argument(
        "--parallel",
        "-j",
        type=int,
        default=1,
        metavar="N",
        help="Process N emails in parallel (default: 1)",
    )
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        metavar="DIR",
        help="Merge fully resolved orders into the JSON draft store in DIR",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    input_path = Path(args.input)
    output_path = Path(args.output)

    if not input_path.exists():
        input_path.mkdir(parents=True, exist_ok=True)
        print(f"Created input directory: {input_path.absolute()}. Add order emails and run again.")
        return

    store = JsonDraftStore(args.store) if args.store else None
    results = run_on_folder(
        input_path,
        output_path,
        use_llm_fallback=not args.no_llm_fallback,
        max_workers=max(1, args.parallel),
        store=store,
    )

    failed = [r for r in results if "error" in r]
    print(f"Processed {len(results)} email(s). Output in: {output_path.absolute()}")
    for r in results:
        if "error" in r:
            print(f"  - {r['source_file']}: ERROR {r['error']}")
            continue
        lines = sum(len(b["lines"]) for b in r["branches"])
        drafts = f", {len(r['draft_ids'])} draft(s)" if "draft_ids" in r else ""
        print(f"  - {r['source_email_id']}: {len(r['branches'])} branch(es), {lines} line(s){drafts}")
    if failed:
        print(f"{len(failed)} email(s) failed")


if __name__ == "__main__":
    main()
