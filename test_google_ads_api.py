"""
Tests for the Google Ads REST client: query building, translation and transport.
"""

import json
import time
from unittest.mock import MagicMock

import pytest
import requests

from audience_bidding_core import (
    AD_GROUP_LEVEL,
    CAMPAIGN_LEVEL,
    CAMPAIGN_PERFORMANCE_REPORT,
    CONTAINS_ANY_IGNORE_CASE,
    GREATER_THAN,
    Audience,
    Auth,
    AuthenticationError,
    Condition,
    ConfigurationError,
    GoogleAdsAPI,
    ReportQuery,
    TargetingEntity,
    normalize_customer_id,
)


def make_response(status_code=200, payload=None, headers=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(payload if payload is not None else {}).encode('utf-8')
    response.headers.update(headers or {})
    response.url = "https://googleads.googleapis.com/test"
    return response


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(time, 'sleep', lambda seconds: None)


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def api(session, monkeypatch):
    monkeypatch.setenv('GOOGLE_ADS_DEVELOPER_TOKEN', 'dev-token')
    monkeypatch.delenv('GOOGLE_ADS_LOGIN_CUSTOMER_ID', raising=False)
    client = GoogleAdsAPI('123-456-7890', session=session, max_requests_per_second=1000)
    client.auth = Auth('tok', 'Bearer', time.time() + 3600)
    return client


def sent_queries(session):
    return [c.kwargs['json']['query'] for c in session.request.call_args_list]


CAMPAIGN = TargetingEntity('111', 'Generic_Search_UK', CAMPAIGN_LEVEL, '111')
AD_GROUP = TargetingEntity('222', 'Ad group', AD_GROUP_LEVEL, '111')


@pytest.mark.parametrize("raw, expected", [
    ('123-456-7890', '1234567890'),
    (1234567890, '1234567890'),
    (' 123 456 7890 ', '1234567890'),
    (None, ''),
])
def test_normalize_customer_id(raw, expected):
    assert normalize_customer_id(raw) == expected


def test_customer_id_is_required(session):
    with pytest.raises(ConfigurationError):
        GoogleAdsAPI('', session=session)


def test_build_query_selects_condition_fields_and_date_range(api):
    query = api.build_query(
        'campaign', ['campaign.id'], [Condition('Impressions', GREATER_THAN, 50)], 'LAST_7_DAYS'
    )

    assert query == (
        "SELECT campaign.id, metrics.impressions FROM campaign "
        "WHERE metrics.impressions > 50 AND segments.date DURING LAST_7_DAYS"
    )


def test_unknown_field_is_rejected(api):
    with pytest.raises(ValueError, match="Unsupported field"):
        api.build_query('campaign', ['campaign.id'], [Condition('Clicks', GREATER_THAN, 1)])


def test_campaign_selector_filters_names_locally(api, session):
    session.request.return_value = make_response(payload={"results": [
        {"campaign": {"id": "1", "name": "Brand_Search_UK"}, "metrics": {"impressions": "900"}},
        {"campaign": {"id": "2", "name": "Generic_Search_UK"}, "metrics": {"impressions": "700"}},
    ]})

    selector = api.campaigns() \
        .with_condition(Condition('CampaignName', CONTAINS_ANY_IGNORE_CASE, ['generic'])) \
        .with_condition(Condition('Impressions', GREATER_THAN, 50)) \
        .for_date_range('LAST_7_DAYS')

    campaigns = list(selector)

    assert campaigns == [TargetingEntity('2', 'Generic_Search_UK', CAMPAIGN_LEVEL, '2')]
    (query,) = sent_queries(session)
    assert "metrics.impressions > 50" in query
    assert "campaign.name" in query
    assert "CONTAINS" not in query
    assert "segments.date DURING LAST_7_DAYS" in query


def test_search_follows_page_tokens(api, session):
    session.request.side_effect = [
        make_response(payload={"results": [{"campaign": {"id": "1", "name": "a"}}], "nextPageToken": "p2"}),
        make_response(payload={"results": [{"campaign": {"id": "2", "name": "b"}}]}),
    ]

    ids = [c.entity_id for c in api.campaigns()]

    assert ids == ['1', '2']
    second_payload = session.request.call_args_list[1].kwargs['json']
    assert second_payload['pageToken'] == 'p2'


def test_audiences_with_date_range_read_the_audience_view(api, session):
    session.request.return_value = make_response(payload={"results": [{
        "adGroup": {"id": "222"},
        "adGroupCriterion": {
            "resourceName": "customers/1234567890/adGroupCriteria/222~80432",
            "criterionId": "80432",
            "type": "USER_INTEREST",
            "userInterest": {"userInterestCategory": "customers/1234567890/userInterests/80432"},
            "bidModifier": 1.2,
        },
        "metrics": {"impressions": "120", "conversions": 4.0, "costMicros": "8000000"},
    }]})

    (audience,) = list(api.audiences(AD_GROUP).for_date_range('LAST_30_DAYS'))

    assert audience == Audience(
        audience_id='80432',
        criterion_id='80432',
        resource_name='customers/1234567890/adGroupCriteria/222~80432',
        entity=AD_GROUP,
        stats=audience.stats,
        bid_modifier=1.2,
    )
    assert audience.stats.impressions == 120
    assert audience.stats.conversions == 4.0
    assert audience.stats.cost == pytest.approx(8.0)
    (query,) = sent_queries(session)
    assert " FROM ad_group_audience_view " in query
    assert "ad_group.id = 222" in query
    assert "ad_group_criterion.type = 'USER_INTEREST'" in query
    assert "ad_group_criterion.negative = FALSE" in query


def test_audiences_without_date_range_count_all_attachments(api, session):
    session.request.return_value = make_response(payload={"results": []})

    assert api.audiences(CAMPAIGN).total_num_entities() == 0

    (query,) = sent_queries(session)
    assert " FROM campaign_criterion " in query
    assert "campaign_criterion.type IN ('USER_INTEREST'" in query
    assert "campaign_criterion.negative = FALSE" in query
    assert "metrics." not in query


def test_report_converts_micros(api, session):
    session.request.return_value = make_response(payload={"results": [
        {"campaign": {"id": "111"}, "metrics": {"costPerAllConversions": 2500000.0, "impressions": "80"}},
    ]})

    rows = list(api.report(ReportQuery(
        fields=('CampaignId', 'CostPerAllConversion'),
        report_name=CAMPAIGN_PERFORMANCE_REPORT,
        conditions=(Condition('Impressions', GREATER_THAN, 50),),
        date_range='LAST_7_DAYS',
    )))

    assert rows == [{'CampaignId': '111', 'CostPerAllConversion': pytest.approx(2.5)}]


def test_unknown_report_is_rejected(api):
    with pytest.raises(ValueError, match="Unsupported report"):
        list(api.report(ReportQuery(fields=('CampaignId',), report_name='KEYWORDS_PERFORMANCE_REPORT')))


@pytest.mark.parametrize("entity, service", [
    (CAMPAIGN, 'campaignCriteria'),
    (AD_GROUP, 'adGroupCriteria'),
])
def test_set_bid_modifier_mutates_the_criterion(api, session, entity, service):
    session.request.return_value = make_response(payload={"results": [{}]})
    audience = Audience('80432', '80432', 'customers/1234567890/criteria/x~80432', entity)

    api.set_bid_modifier(audience, 1.25)

    kwargs = session.request.call_args.kwargs
    assert kwargs['method'] == 'POST'
    assert kwargs['url'].endswith(f"/customers/1234567890/{service}:mutate")
    assert kwargs['json'] == {"operations": [{
        "update": {"resourceName": "customers/1234567890/criteria/x~80432", "bidModifier": 1.25},
        "updateMask": "bidModifier",
    }]}
    assert kwargs['headers']['developer-token'] == 'dev-token'
    assert kwargs['headers']['Authorization'] == 'Bearer tok'


def test_server_errors_are_retried(api, session):
    session.request.side_effect = [
        make_response(500),
        make_response(payload={"results": [{"campaign": {"id": "1", "name": "a"}}]}),
    ]

    assert [c.entity_id for c in api.campaigns()] == ['1']
    assert session.request.call_count == 2


def test_client_errors_are_raised_without_retry(api, session):
    session.request.return_value = make_response(400, {"error": {"message": "bad query"}})

    with pytest.raises(requests.exceptions.HTTPError):
        list(api.campaigns())

    assert session.request.call_count == 1


def test_persistent_server_errors_are_raised(api, session):
    session.request.return_value = make_response(503)

    with pytest.raises(requests.exceptions.HTTPError):
        list(api.campaigns())

    assert session.request.call_count == 3


def test_unauthorized_response_refreshes_the_token_once(api, session, monkeypatch):
    monkeypatch.setenv('GOOGLE_ADS_CLIENT_ID', 'client')
    monkeypatch.setenv('GOOGLE_ADS_CLIENT_SECRET', 'secret')
    monkeypatch.setenv('GOOGLE_ADS_REFRESH_TOKEN', 'refresh')
    session.post.return_value = make_response(payload={"access_token": "fresh", "expires_in": 3600})
    session.request.side_effect = [
        make_response(401),
        make_response(payload={"results": []}),
    ]

    assert list(api.campaigns()) == []

    session.post.assert_called_once()
    assert session.request.call_args.kwargs['headers']['Authorization'] == 'Bearer fresh'


def test_unauthorized_last_attempt_still_refreshes(api, session, monkeypatch):
    monkeypatch.setenv('GOOGLE_ADS_CLIENT_ID', 'client')
    monkeypatch.setenv('GOOGLE_ADS_CLIENT_SECRET', 'secret')
    monkeypatch.setenv('GOOGLE_ADS_REFRESH_TOKEN', 'refresh')
    session.post.return_value = make_response(payload={"access_token": "fresh", "expires_in": 3600})
    session.request.side_effect = [
        make_response(500),
        make_response(500),
        make_response(401),
        make_response(payload={"results": []}),
    ]

    assert list(api.campaigns()) == []

    session.post.assert_called_once()
    assert session.request.call_count == 4


def test_retry_after_http_date_falls_back_to_backoff(api, session, monkeypatch):
    sleeps = []
    monkeypatch.setattr(time, 'sleep', sleeps.append)
    session.request.side_effect = [
        make_response(429, headers={'Retry-After': 'Wed, 21 Oct 2015 07:28:00 GMT'}),
        make_response(payload={"results": []}),
    ]

    assert list(api.campaigns()) == []

    assert sleeps == [2]


def test_retry_after_seconds_are_honoured(api, session, monkeypatch):
    sleeps = []
    monkeypatch.setattr(time, 'sleep', sleeps.append)
    session.request.side_effect = [
        make_response(429, headers={'Retry-After': '7'}),
        make_response(payload={"results": []}),
    ]

    assert list(api.campaigns()) == []

    assert sleeps == [7]


def test_missing_oauth_environment_raises(session, monkeypatch):
    for key in ('GOOGLE_ADS_CLIENT_ID', 'GOOGLE_ADS_CLIENT_SECRET', 'GOOGLE_ADS_REFRESH_TOKEN'):
        monkeypatch.delenv(key, raising=False)
    client = GoogleAdsAPI('1234567890', session=session)

    with pytest.raises(AuthenticationError):
        list(client.campaigns())

    session.request.assert_not_called()


def test_login_customer_id_header(session, monkeypatch):
    monkeypatch.setenv('GOOGLE_ADS_DEVELOPER_TOKEN', 'dev-token')
    client = GoogleAdsAPI('1234567890', login_customer_id='999-000-1111', session=session)
    client.auth = Auth('tok', 'Bearer', time.time() + 3600)
    session.request.return_value = make_response(payload={"results": []})

    list(client.campaigns())

    assert session.request.call_args.kwargs['headers']['login-customer-id'] == '9990001111'


def test_verify_connection_reports_failure(api, session):
    session.request.return_value = make_response(403, {"error": {"message": "denied"}})

    result = api.verify_connection()

    assert result['success'] is False
    assert 'error' in result
