#!/usr/bin/env python3
"""
Complete In-Market Audience Bidding Run: Config → Credentials → Google Ads → Audit
==================================================================================

This script wraps a single bidding run for operators:
1. Validates the configuration file
2. Loads credentials (Google Secret Manager or environment)
3. Computes and applies in-market audience bid modifiers
4. Saves the audit trail, ready for dashboard review

Usage:
  # Basic usage (uses audience_bidding_config.yaml)
  python run_complete_pipeline.py

  # With custom config
  python run_complete_pipeline.py --config my_config.yaml

  # Dry run (no actual changes)
  python run_complete_pipeline.py --dry-run
"""

import os
import sys
import argparse
import logging
from datetime import datetime

import requests

import audience_bidding_core

logger = logging.getLogger(__name__)


def validate_config(config_path: str) -> bool:
    """Validate that the config loads and its bidding settings are usable"""
    logger.info(f"Validating configuration: {config_path}")

    try:
        config = audience_bidding_core.Config(config_path)
        settings = audience_bidding_core.BiddingSettings.from_config(config)
    except audience_bidding_core.ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        logger.error("Required in audience_bidding_config.yaml:")
        logger.error("  bidding:")
        logger.error("    audience_mapping_csv_download_url: 'https://...'")
        return False

    logger.info("✅ Configuration valid")
    logger.info(f"   Date Range: {settings.date_range}")
    logger.info(f"   Minimum Impressions: {settings.minimum_impressions}")
    logger.info(f"   Campaign name contains: {list(settings.campaign_name_contains) or 'any'}")
    logger.info(f"   Campaign name does not contain: {list(settings.campaign_name_does_not_contain) or 'nothing'}")

    project_id = config.get('google_cloud.project_id')
    if project_id:
        logger.info(f"   Secret Manager: {project_id}/{config.get('google_cloud.secret_id')}")
    else:
        logger.info("   Secret Manager: not configured, using environment variables")

    return True


def _step(number: int, title: str):
    logger.info("")
    logger.info("=" * 80)
    logger.info(f"STEP {number}: {title}")
    logger.info("=" * 80)


def run_pipeline(config_path: str, customer_id: str = None, dry_run: bool = False,
                 platform: audience_bidding_core.AdsPlatform = None,
                 session: requests.Session = None) -> bool:
    """
    Run one bidding pass end to end

    Args:
        config_path: Path to audience_bidding_config.yaml
        customer_id: Google Ads customer ID (optional, can be in secret)
        dry_run: If True, modifiers are computed and audited but not written
        platform: Account access to use instead of the Google Ads API
        session: HTTP session used to download the audience mapping

    Returns:
        True if successful
    """
    logger.info("=" * 80)
    logger.info("IN-MARKET AUDIENCE BIDDING PIPELINE")
    logger.info("=" * 80)
    logger.info(f"Started at: {datetime.now().isoformat()}")
    logger.info(f"Config: {config_path}")
    logger.info(f"Customer ID: {customer_id or 'From Secret Manager / environment'}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("=" * 80)

    try:
        _step(1, "Validate Configuration")
        if not validate_config(config_path):
            logger.error("Configuration validation failed")
            return False

        _step(2, "Initialize Automation")
        automation = audience_bidding_core.InMarketAudienceBidding(
            config_path=config_path,
            customer_id=customer_id,
            dry_run=dry_run,
            platform=platform,
            session=session,
        )
        logger.info("✅ Automation initialized successfully")

        _step(3, "Compute and Apply Bid Modifiers")
        results = automation.run()

        _step(4, "Results Summary")
        for key, value in results.items():
            logger.info(f"   {key}: {value}")
        if dry_run:
            logger.info(f"   {results['operations']} modifiers computed, none written (dry run)")

        _step(5, "Review in Dashboard")
        logger.info(f"Audit trail directory: {automation.audit.output_dir}")
        logger.info("To review the modifiers:")
        logger.info("   streamlit run dashboard.py")
        logger.info("   then select 'Audit Logs' and enter the directory above")

        logger.info("")
        logger.info("=" * 80)
        logger.info("✅ PIPELINE COMPLETED SUCCESSFULLY")
        logger.info("=" * 80)
        logger.info(f"Completed at: {datetime.now().isoformat()}")

        return True

    except audience_bidding_core.AuthenticationError as e:
        logger.error("=" * 80)
        logger.error("❌ AUTHENTICATION FAILED")
        logger.error("=" * 80)
        logger.error(f"Error: {e}")
        logger.error("")
        logger.error("Troubleshooting:")
        logger.error("1. Verify credentials in Google Secret Manager:")
        logger.error("   gcloud secrets versions access latest --secret=google-ads-credentials")
        logger.error("")
        logger.error("2. Or export them directly:")
        logger.error("   GOOGLE_ADS_DEVELOPER_TOKEN, GOOGLE_ADS_CLIENT_ID,")
        logger.error("   GOOGLE_ADS_CLIENT_SECRET, GOOGLE_ADS_REFRESH_TOKEN")
        logger.error("")
        logger.error("3. Check the refresh token has the adwords scope")
        return False

    except audience_bidding_core.ConfigurationError as e:
        logger.error("=" * 80)
        logger.error("❌ CONFIGURATION ERROR")
        logger.error("=" * 80)
        logger.error(f"Error: {e}")
        logger.error("")
        logger.error("Troubleshooting:")
        logger.error("1. Pass --customer-id or set GOOGLE_ADS_CUSTOMER_ID")
        logger.error("2. Check the audience mapping CSV has 'Criterion ID' and 'Category' columns")
        return False

    except Exception as e:
        logger.error("=" * 80)
        logger.error("❌ PIPELINE FAILED")
        logger.error("=" * 80)
        logger.exception(f"Error: {e}")
        return False


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='In-Market Audience Bidding: Config → Credentials → Google Ads → Audit',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config
  python run_complete_pipeline.py

  # Run with custom config
  python run_complete_pipeline.py --config my_config.yaml

  # Dry run (no changes)
  python run_complete_pipeline.py --dry-run

  # With specific customer ID
  python run_complete_pipeline.py --customer-id 123-456-7890
        """
    )

    parser.add_argument(
        '--config',
        default='audience_bidding_config.yaml',
        help='Path to configuration file (default: audience_bidding_config.yaml)'
    )

    parser.add_argument(
        '--customer-id',
        help='Google Ads customer ID (optional if in Secret Manager)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run without making actual changes'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    # Check if config file exists
    if not os.path.exists(args.config):
        logger.error(f"Configuration file not found: {args.config}")
        logger.error("")
        logger.error("Create one from the example:")
        logger.error(f"  cp audience_bidding_config.example.yaml {args.config}")
        sys.exit(1)

    success = run_pipeline(
        config_path=args.config,
        customer_id=args.customer_id,
        dry_run=args.dry_run
    )

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
