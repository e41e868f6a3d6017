"""
main.py
--------
Entry point for the Chaos Scan Engine.

Reads a facts file (CSV or JSON records), normalizes it, runs the full
analysis and writes the final issue list to the outputs/ folder.

Usage (from the project root):
    python main.py --input path/to/facts.csv

    # With optional arguments:
    python main.py --input facts.json --as-of 2024-06-30
    python main.py --input facts.csv --max-issues 5 --scan-mode bank
"""

import argparse
import logging
import os
import sys
from datetime import datetime

import pandas as pd

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.models import ScanMode, to_date
from core.normalize import normalize_and_filter
from core.scan_mode import get_scan_mode_terminology
from core.summary import generate_summary
from diagnostics.bank_diagnostics import summarize_diagnostics
from pipeline import AnalysisOptions, ChaosScanPipeline


REQUIRED_COLUMNS = ["amount_value", "date_value"]


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Chaos Scan Engine: detect billing and bank transaction issues."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to a facts file (.csv or .json records)."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--as-of", type=str, default=None,
        help="Reference date (YYYY-MM-DD) for invoice aging. Defaults to today."
    )
    parser.add_argument(
        "--max-issues", type=int, default=None,
        help="Maximum issues to report. Defaults to the prune profile value (8)."
    )
    parser.add_argument(
        "--scan-mode", type=str, default=None, choices=[m.value for m in ScanMode],
        help="Force a scan mode instead of detecting it."
    )
    parser.add_argument(
        "--min-confidence", type=float, default=None,
        help="Drop facts below this extraction confidence. Defaults to config value (0.6)."
    )
    args = parser.parse_args(argv)

    if args.as_of is not None:
        as_of = to_date(args.as_of)
        if as_of is None:
            parser.error(f"--as-of: not a valid date: {args.as_of!r} (expected YYYY-MM-DD)")
        args.as_of = as_of
    return args


# =============================================================================
# LOADING
# =============================================================================

def load_records(input_path: str) -> pd.DataFrame:
    """
    Reads a CSV or JSON records file into a DataFrame.

    Raises:
        ValueError: If required columns are missing.
    """
    if input_path.lower().endswith(".json"):
        df = pd.read_json(input_path, orient="records", dtype=False)
    else:
        df = pd.read_csv(input_path, dtype={"id": str, "amount_currency": str})

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    return df


# =============================================================================
# MAIN
# =============================================================================

def main(argv: list[str] | None = None):
    args = parse_args(argv)

    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    # --- Load facts ---
    logger.info(f"Loading facts from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    records = load_records(args.input)
    facts = normalize_and_filter(records.to_dict(orient="records"), args.min_confidence)
    logger.info(f"Loaded {len(records):,} records, {len(facts):,} facts after normalization.")

    # --- Run pipeline ---
    options = AnalysisOptions(
        scan_mode=ScanMode(args.scan_mode) if args.scan_mode else None,
        as_of=args.as_of,
        max_issues=args.max_issues,
    )
    pipeline = ChaosScanPipeline(options)
    result = pipeline.run(facts)

    # --- Output: issues ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    issues_path = os.path.join(output_dir, f"issues_{timestamp}.csv")
    pipeline.to_frame(result).to_csv(issues_path, index=False)
    logger.info(f"Issues saved to: {issues_path}")

    _print_summary(result)


def _print_summary(result):
    """Prints a clean summary to the console."""
    terms = get_scan_mode_terminology(result.scan_mode)
    summary = generate_summary(result.issues, result.prune_stats, result.scan_mode)

    print("\n" + "=" * 80)
    print(f"  {terms.report_title.upper()}")
    print("=" * 80)
    print(f"\n  {summary.executive_summary}\n")

    if result.issues:
        print("  Issues:")
        print("  " + "-" * 60)
        for issue in result.issues:
            print(f"    [{issue.severity.value.upper():6s}] {issue.title}")
            if issue.evidence_summary:
                print(f"             {issue.evidence_summary}")
    else:
        print(f"  {terms.no_issues_message}")

    if summary.cap_message:
        print(f"\n  {summary.cap_message}")

    if result.not_flagged:
        print("\n  Checked and not flagged:")
        print("  " + "-" * 60)
        for message in result.not_flagged:
            print(f"    - {message}")

    if result.bank_diagnostics is not None:
        print(f"\n  Diagnostics: {summarize_diagnostics(result.bank_diagnostics)}")
        if not result.issues:
            for blocker in result.bank_diagnostics.top_blockers:
                print(f"    * {blocker}")

    if result.bank_insights is not None and result.bank_insights.can_sum_recurring:
        insights = result.bank_insights
        print(
            f"\n  Recurring merchants: {insights.recurring_merchant_count} "
            f"({insights.recurring_currency} {insights.total_monthly_recurring:,.2f}/month)"
        )
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
