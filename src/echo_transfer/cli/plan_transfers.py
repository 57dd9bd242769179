"""
Command-line interface for planning Echo transfers.

Reads a YAML document with CommonData, Patterns, Layout, Compounds and
Barcodes sections, runs the planner and writes one CSV per transfer stage.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

from echo_transfer.calculator import EchoCalculator, TransferPlan
from echo_transfer.config.loader import load_settings_from_yaml, load_yaml_config
from echo_transfer.config.settings import EchoSettings, settings as default_settings
from echo_transfer.inputs import InputData
from echo_transfer.precalculator import EchoPreCalculator


def plan_from_config(config: Dict, settings: Optional[EchoSettings] = None) -> tuple:
    """Run the planner on a parsed input document.

    Returns the pre-calculator and the plan (None when a checkpoint failed).
    """
    input_data = InputData.from_dict(config)
    pre_calc = EchoPreCalculator(input_data, settings=settings)
    pre_calc.calculate_needs()
    if pre_calc.checkpoint_tracker.has_failures():
        return pre_calc, None
    plan: TransferPlan = EchoCalculator(pre_calc).run()
    return pre_calc, plan


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Plan Echo acoustic transfers for dose-response and combination assays.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example:
  echo-plan assay.yaml --output-dir transfers/
  echo-plan assay.yaml -o transfers/ --settings echo_settings.yaml
        """,
    )
    parser.add_argument("input", help="Path to YAML input document")
    parser.add_argument(
        "--output-dir",
        "-o",
        default="transfers",
        help="Directory for the transfer CSVs (default: transfers)",
    )
    parser.add_argument(
        "--settings",
        "-s",
        help="Optional YAML file overriding instrument settings",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: from settings)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the checks without writing CSVs",
    )
    args = parser.parse_args(argv)

    settings = load_settings_from_yaml(args.settings) if args.settings else default_settings
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not os.path.exists(args.input):
        print(f"❌ Error: Input file not found: {args.input}")
        return 1

    config = load_yaml_config(args.input)
    pre_calc, plan = plan_from_config(config, settings)

    report = (plan.checkpoint_tracker if plan else pre_calc.checkpoint_tracker).report()
    print(report)

    if plan is None:
        print("❌ Planning stopped: a checkpoint failed")
        return 2

    print(f"\n{len(plan.transfer_steps)} transfers across {len(plan.plates)} plates")
    if args.dry_run:
        return 0

    paths = plan.to_csv(Path(args.output_dir))
    for path in paths:
        print(f"💾 {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
