"""
Pytest fixtures for the in-market audience bidding tests.
"""

from collections import defaultdict
from typing import Any, Dict, List, Tuple
from unittest.mock import MagicMock

import pytest
import requests

from audience_bidding_core import (
    ADGROUP_PERFORMANCE_REPORT,
    AD_GROUP_LEVEL,
    CAMPAIGN_LEVEL,
    CAMPAIGN_PERFORMANCE_REPORT,
    SELECT_AD_GROUPS,
    SELECT_AUDIENCES,
    SELECT_CAMPAIGNS,
    AdsPlatform,
    Audience,
    AudienceMappingLoader,
    AudienceStats,
    AuditLogger,
    BiddingSettings,
    TargetingEntity,
)


MAPPING_URL = "https://example.com/in-market-audiences.csv"

MAPPING_CSV = (
    "Criterion ID,Category\n"
    "111,Shoppers\n"
    "222,Researchers\n"
)


# ============== MOCK CLASSES ==============

class FakeAdsPlatform(AdsPlatform):
    """In-memory account that evaluates conditions locally and records writes."""

    def __init__(self):
        self.campaign_rows: List[Dict[str, Any]] = []
        self.ad_group_rows: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.audience_rows: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
        self.report_rows: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.selected: List[Any] = []
        self.queries: List[Any] = []
        self.writes: List[Tuple[Audience, float]] = []
        self.fail_on_write = None

    # ----- account setup -----

    def add_campaign(self, campaign_id, name, impressions=100, cpa=None):
        self.campaign_rows.append(
            {"CampaignId": campaign_id, "CampaignName": name, "Impressions": impressions}
        )
        if cpa is not None:
            self.report_rows[CAMPAIGN_PERFORMANCE_REPORT].append(
                {"CampaignId": campaign_id, "CostPerAllConversion": cpa, "Impressions": impressions}
            )
        return TargetingEntity(campaign_id, name, CAMPAIGN_LEVEL, campaign_id)

    def add_ad_group(self, campaign_id, ad_group_id, name="Ad group", impressions=100, cpa=None):
        self.ad_group_rows[campaign_id].append(
            {"AdGroupId": ad_group_id, "AdGroupName": name, "Impressions": impressions}
        )
        if cpa is not None:
            self.report_rows[ADGROUP_PERFORMANCE_REPORT].append(
                {"AdGroupId": ad_group_id, "CostPerAllConversion": cpa, "Impressions": impressions}
            )
        return TargetingEntity(ad_group_id, name, AD_GROUP_LEVEL, campaign_id)

    def add_audience(self, level, entity_id, audience_id, impressions=100, conversions=0,
                     cost=0.0, bid_modifier=None, negative=False):
        self.audience_rows[(level, entity_id)].append({
            "AudienceId": audience_id,
            "Impressions": impressions,
            "Conversions": conversions,
            "Cost": cost,
            "BidModifier": bid_modifier,
            "Negative": negative,
        })

    # ----- platform interface -----

    def select(self, selector):
        self.selected.append(selector)
        parent = selector.parent

        if selector.kind == SELECT_CAMPAIGNS:
            rows = self.campaign_rows
        elif selector.kind == SELECT_AD_GROUPS:
            rows = self.ad_group_rows[parent.entity_id]
        elif selector.kind == SELECT_AUDIENCES:
            # Excluded audiences never count as targeting
            rows = [r for r in self.audience_rows[(parent.level, parent.entity_id)] if not r["Negative"]]
        else:
            raise ValueError(selector.kind)

        for row in rows:
            if all(c.matches(row.get(c.field)) for c in selector.conditions):
                yield self._build(selector, row)

    @staticmethod
    def _build(selector, row):
        parent = selector.parent
        if selector.kind == SELECT_CAMPAIGNS:
            return TargetingEntity(row["CampaignId"], row["CampaignName"], CAMPAIGN_LEVEL, row["CampaignId"])
        if selector.kind == SELECT_AD_GROUPS:
            return TargetingEntity(row["AdGroupId"], row["AdGroupName"], AD_GROUP_LEVEL, parent.entity_id)
        return Audience(
            audience_id=row["AudienceId"],
            criterion_id=row["AudienceId"],
            resource_name=f"customers/1/criteria/{parent.entity_id}~{row['AudienceId']}",
            entity=parent,
            stats=AudienceStats(
                impressions=row["Impressions"],
                conversions=row["Conversions"],
                cost=row["Cost"],
            ),
            bid_modifier=row["BidModifier"],
        )

    def report(self, query):
        self.queries.append(query)
        for row in self.report_rows[query.report_name]:
            if all(c.matches(row.get(c.field)) for c in query.conditions):
                yield {name: row.get(name) for name in query.fields}

    def set_bid_modifier(self, audience, modifier):
        if self.fail_on_write == audience.audience_id:
            raise requests.exceptions.HTTPError(f"400 Client Error: bid modifier rejected for {audience.audience_id}")
        self.writes.append((audience, modifier))

    # ----- inspection helpers -----

    def selected_kinds(self, kind, entity_id=None):
        return [
            s for s in self.selected
            if s.kind == kind and (entity_id is None or (s.parent and s.parent.entity_id == entity_id))
        ]


def make_mapping_session(text=MAPPING_CSV):
    """requests.Session stand-in whose GET returns the given CSV text."""
    response = MagicMock()
    response.text = text
    response.status_code = 200
    response.raise_for_status.return_value = None
    session = MagicMock()
    session.get.return_value = response
    return session


# ============== FIXTURES ==============

@pytest.fixture
def settings() -> BiddingSettings:
    return BiddingSettings(
        audience_mapping_csv_download_url=MAPPING_URL,
        date_range="LAST_7_DAYS",
        minimum_impressions=50,
    )


@pytest.fixture
def platform() -> FakeAdsPlatform:
    return FakeAdsPlatform()


@pytest.fixture
def mapping_session():
    return make_mapping_session()


@pytest.fixture
def mapping_loader(mapping_session) -> AudienceMappingLoader:
    return AudienceMappingLoader(session=mapping_session)


@pytest.fixture
def audit_logger(tmp_path) -> AuditLogger:
    return AuditLogger(str(tmp_path / "audit"))


@pytest.fixture
def config_file(tmp_path):
    """Write a minimal valid YAML config and return its path."""
    path = tmp_path / "audience_bidding_config.yaml"
    path.write_text(
        "bidding:\n"
        "  date_range: LAST_7_DAYS\n"
        "  minimum_impressions: 50\n"
        "  campaign_name_does_not_contain: []\n"
        "  campaign_name_contains: []\n"
        f"  audience_mapping_csv_download_url: '{MAPPING_URL}'\n"
        "logging:\n"
        f"  output_dir: '{tmp_path / 'logs'}'\n",
        encoding="utf-8",
    )
    return str(path)
