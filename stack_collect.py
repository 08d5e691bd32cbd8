#!/usr/bin/env python3
"""
Stack Catalog - CloudFormation Stack Provider

Discovers CloudFormation stacks and the Lambda functions they declare in
every account of an AWS Organization and publishes them to a service
catalog as a full-replacement set of entities. Each invocation runs exactly
one refresh cycle; schedule it (cron, EventBridge, a container scheduler)
for periodic refresh.

Usage:
    # Chain through a source role, then a role present in every account
    python3 stack_collect.py --source-role-arn arn:aws:iam::123456789012:role/CatalogReader \\
        --destination-role-name CatalogStackReader --regions us-east-1,eu-west-1

    # Use the current credentials as the top-level credentials
    python3 stack_collect.py --destination-role-name CatalogStackReader

    # POST the mutation to a catalog endpoint instead of writing it locally
    export STACKCAT_SINK_TOKEN="..."
    python3 stack_collect.py --config stack-catalog.yaml --sink-url https://catalog.example.com/api/mutations
"""
import argparse
import logging
import sys
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from stacklib.config import (
    ConfigError,
    generate_sample_config,
    load_config,
    settings_from_config,
)
from stacklib.constants import DEFAULT_REGION, REPORT_FILENAME_PREFIX
from stacklib.emitter import MemorySink
from stacklib.engine import CycleReport, RefreshEngine
from stacklib.utils import ProgressTracker, join_output_path, setup_logging, write_json

logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_CYCLE_FAILED = 1
EXIT_CONFIG_ERROR = 2


# =============================================================================
# Session Management
# =============================================================================

def get_session(profile: Optional[str] = None, region: Optional[str] = None) -> boto3.Session:
    """Create the base boto3 session."""
    return boto3.Session(profile_name=profile, region_name=region)


def get_enabled_regions(session: boto3.Session) -> List[str]:
    """Get list of enabled regions."""
    ec2 = session.client('ec2', region_name=DEFAULT_REGION)
    response = ec2.describe_regions(AllRegions=False)
    return sorted([r.get('RegionName', '') for r in response.get('Regions', []) if r.get('RegionName')])


# =============================================================================
# Output
# =============================================================================

def print_report(report: CycleReport) -> None:
    """Print a cycle summary to stdout."""
    print(f"\n{'='*60}")
    print("REFRESH CYCLE " + ("EMITTED" if report.emitted else "NOT EMITTED"))
    print(f"{'='*60}")
    print(f"  Run ID:          {report.run_id}")
    print(f"  Accounts:        {report.accounts_succeeded}/{report.accounts_total} succeeded")
    print(f"  Stacks scanned:  {report.stacks_scanned:,}")
    print(f"  Stacks skipped:  {report.stacks_skipped:,}")
    print(f"  Entities:        {report.entity_count:,}")
    if report.timed_out:
        print("  Timed out:       yes (results discarded)")
    if report.error:
        print(f"  Error:           {report.error}")
    for failure in report.accounts_failed:
        name_str = f" ({failure.account_name})" if failure.account_name else ""
        print(f"  - {failure.account_id}{name_str}: {failure.reason}")
    print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Stack Catalog - CloudFormation Stack Provider',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Two-hop chain: source role, then the destination role in every account
  python3 stack_collect.py --source-role-arn arn:aws:iam::123456789012:role/CatalogReader \\
      --destination-role-name CatalogStackReader

  # Restrict regions and skip accounts
  python3 stack_collect.py --destination-role-name CatalogStackReader \\
      --regions us-east-1,eu-west-1 --skip-accounts 111111111111

  # Abandon (and emit nothing) if the cycle takes longer than 15 minutes
  python3 stack_collect.py --destination-role-name CatalogStackReader --cycle-timeout 900
"""
    )

    # Basic options
    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--profile', help='AWS profile name for the base session')
    parser.add_argument('--regions', help='Comma-separated list of regions (default: all enabled)')
    parser.add_argument('--output', '-o', help='Output directory or S3 path (default: .)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress display')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run the cycle but keep the mutation in memory instead of submitting it'
    )

    # Credential chain
    parser.add_argument(
        '--source-role-arn',
        help='Role assumed with the base credentials; its credentials list the organization '
             'and assume the destination role (default: use the base credentials directly)'
    )
    parser.add_argument(
        '--destination-role-name',
        help='Role name assumed in every account: arn:aws:iam::<account>:role/<name>'
    )
    parser.add_argument(
        '--external-id',
        help='External ID for role assumption (applies to every hop). '
             'Prefer STACKCAT_EXTERNAL_ID to avoid shell history exposure.'
    )

    # Account selection and concurrency
    parser.add_argument(
        '--skip-accounts',
        help='Comma-separated list of account IDs to skip'
    )
    parser.add_argument(
        '--include-suspended',
        action='store_true',
        default=None,
        help='Also scan SUSPENDED accounts'
    )
    parser.add_argument(
        '--max-concurrency',
        type=int,
        metavar='N',
        help='Number of accounts scanned in parallel (default: 3)'
    )
    parser.add_argument(
        '--cycle-timeout',
        type=float,
        metavar='SECONDS',
        help='Abandon the cycle after this many seconds; nothing is emitted'
    )

    # Catalog
    parser.add_argument('--provider-key', help='Location key scoping the full mutation')
    parser.add_argument(
        '--sink-url',
        help='POST the mutation to this URL (default: write catalog_mutation.json to --output)'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle --generate-config
    if args.generate_config:
        print(generate_sample_config())
        return EXIT_OK

    # Load configuration from file/env/args
    try:
        settings = settings_from_config(load_config(args))
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(settings.log_level, output_dir=settings.output)

    try:
        base_session = get_session(settings.profile)
    except BotoCoreError as e:
        logger.error(f"Failed to create AWS session: {e}")
        logger.error("Check your AWS credentials are configured correctly.")
        return EXIT_CYCLE_FAILED

    regions = list(settings.regions)
    if not regions:
        try:
            regions = get_enabled_regions(base_session)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list enabled regions: {e}")
            logger.error("Pass --regions explicitly or grant ec2:DescribeRegions.")
            return EXIT_CYCLE_FAILED
        logger.info(f"Scanning {len(regions)} enabled regions")

    tracker_factory = None
    if not args.no_progress:
        def tracker_factory(total_accounts: int) -> ProgressTracker:
            return ProgressTracker("CloudFormation", total_accounts=total_accounts)

    sink = MemorySink() if args.dry_run else None
    if sink is not None:
        logger.info("Dry run: the catalog mutation will not be submitted")

    engine = RefreshEngine.from_settings(
        settings,
        regions=regions,
        base_session=base_session,
        sink=sink,
        tracker_factory=tracker_factory,
    )
    report = engine.run_once()

    try:
        write_json(report.to_dict(),
                   join_output_path(settings.output, f"{REPORT_FILENAME_PREFIX}_{report.run_id}.json"))
    except (OSError, ClientError, BotoCoreError) as e:
        logger.warning(f"Could not write cycle report: {e}")

    print_report(report)
    return EXIT_OK if report.emitted else EXIT_CYCLE_FAILED


if __name__ == '__main__':
    sys.exit(main())
