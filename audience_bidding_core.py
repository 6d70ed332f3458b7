#!/usr/bin/env python3
"""
In-Market Audience Bidding
==========================

Automatically applies bid modifiers to in-market audiences based on performance.

For every campaign (or, when a campaign has no campaign-level audiences, every
ad group) that passes the name and impression filters, the cost per conversion
of each attached in-market audience is compared with the entity's own cost per
conversion. The ratio becomes the audience's bid modifier:

  modifier = entity CPA / audience CPA

Audiences with no conversions and entities without a baseline CPA are skipped.

Setup:
  export GOOGLE_ADS_DEVELOPER_TOKEN="xxxxxxxx"
  export GOOGLE_ADS_CLIENT_ID="xxxxxxxx.apps.googleusercontent.com"
  export GOOGLE_ADS_CLIENT_SECRET="xxxxxxxx"
  export GOOGLE_ADS_REFRESH_TOKEN="1//xxxxxxxx"

Usage:
  python audience_bidding_core.py --config audience_bidding_config.yaml --customer-id 1234567890
  python audience_bidding_core.py --config audience_bidding_config.yaml --customer-id 1234567890 --dry-run
  python audience_bidding_core.py --config audience_bidding_config.yaml --verify-connection
"""

import argparse
import csv
import io
import json
import logging
import math
import os
import re
import sys
import time
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from functools import wraps
from itertools import chain
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests
import yaml

# Google Cloud Secret Manager (optional)
try:
  from google.cloud import secretmanager
  from google.cloud.exceptions import GoogleCloudError
  SECRETMANAGER_AVAILABLE = True
except ImportError:
  secretmanager = None
  GoogleCloudError = Exception
  SECRETMANAGER_AVAILABLE = False

# ============================================================================
# CONSTANTS
# ============================================================================

GOOGLE_ADS_BASE_URL = "https://googleads.googleapis.com"
DEFAULT_API_VERSION = "v18"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USER_AGENT = "InMarket-Audience-Bidding/1.0"

# Google Ads allows bursts well above this; kept low since a run is a small batch
MAX_REQUESTS_PER_SECOND = 5

# Date range tokens accepted by GAQL's DURING clause
DATE_RANGES = frozenset({
  "TODAY",
  "YESTERDAY",
  "LAST_7_DAYS",
  "LAST_14_DAYS",
  "LAST_30_DAYS",
  "LAST_BUSINESS_WEEK",
  "LAST_WEEK_MON_SUN",
  "LAST_WEEK_SUN_SAT",
  "THIS_WEEK_SUN_TODAY",
  "THIS_WEEK_MON_TODAY",
  "THIS_MONTH",
  "LAST_MONTH",
})

DEFAULT_DATE_RANGE = "LAST_7_DAYS"
DEFAULT_MINIMUM_IMPRESSIONS = 50

# Columns of the published in-market audience list
CRITERION_ID_HEADER = "Criterion ID"
CATEGORY_HEADER = "Category"

CAMPAIGN_PERFORMANCE_REPORT = "CAMPAIGN_PERFORMANCE_REPORT"
ADGROUP_PERFORMANCE_REPORT = "ADGROUP_PERFORMANCE_REPORT"

CAMPAIGN_LEVEL = "campaign"
AD_GROUP_LEVEL = "ad_group"

SELECT_CAMPAIGNS = "campaigns"
SELECT_AD_GROUPS = "ad_groups"
SELECT_AUDIENCES = "audiences"

# ============================================================================
# LOGGING SETUP
# ============================================================================

# Detect if running in Cloud Functions / Cloud Run
IS_CLOUD_FUNCTION = os.getenv('K_SERVICE') is not None or os.getenv('FUNCTION_TARGET') is not None

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(output_dir: str = ".", level: int = logging.INFO):
  """Send logs to stdout, plus a timestamped file outside of Cloud Functions"""
  handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

  if not IS_CLOUD_FUNCTION:
    os.makedirs(output_dir, exist_ok=True)
    handlers.append(logging.FileHandler(os.path.join(
      output_dir,
      f'audience_bidding_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
    )))

  logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

  if IS_CLOUD_FUNCTION:
    logger.info("Running in Cloud Functions environment - using Cloud Logging")
  else:
    logger.info("Running in local environment - using file and console logging")


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class Auth:
  """OAuth access token"""
  access_token: str
  token_type: str
  expires_at: float

  def is_expired(self) -> bool:
    # Refresh token 60 seconds before actual expiry
    return time.time() > self.expires_at - 60


@dataclass(frozen=True)
class TargetingEntity:
  """A campaign or an ad group: the unit an audience is attached to"""
  entity_id: str
  name: str
  level: str
  campaign_id: str

  @property
  def is_campaign(self) -> bool:
    return self.level == CAMPAIGN_LEVEL


@dataclass(frozen=True)
class AudienceStats:
  """Audience metrics over the configured date range"""
  impressions: int = 0
  conversions: float = 0.0
  cost: float = 0.0

  @property
  def cpa(self) -> Optional[float]:
    return (self.cost / self.conversions) if self.conversions > 0 else None


@dataclass(frozen=True)
class Audience:
  """An audience criterion attached to a campaign or ad group"""
  audience_id: str
  criterion_id: str
  resource_name: str
  entity: TargetingEntity
  stats: AudienceStats = field(default_factory=AudienceStats)
  bid_modifier: Optional[float] = None


@dataclass(frozen=True)
class BidOperation:
  """A modifier to write onto one audience"""
  audience: Audience
  modifier: float
  entity_cpa: float
  category: str = ""

  @property
  def audience_cpa(self) -> Optional[float]:
    return self.audience.stats.cpa


@dataclass
class AuditEntry:
  """Audit trail entry"""
  timestamp: str
  action_type: str
  entity_type: str
  entity_id: str
  audience_id: str
  category: str
  old_value: str
  new_value: str
  reason: str
  dry_run: bool


# ============================================================================
# CONDITIONS, SELECTORS AND REPORT QUERIES
# ============================================================================

GREATER_THAN = ">"
EQUALS = "="
CONTAINS_IGNORE_CASE = "CONTAINS_IGNORE_CASE"
CONTAINS_ANY_IGNORE_CASE = "CONTAINS_ANY_IGNORE_CASE"
DOES_NOT_CONTAIN_IGNORE_CASE = "DOES_NOT_CONTAIN_IGNORE_CASE"

OPERATORS = frozenset({
  GREATER_THAN,
  EQUALS,
  CONTAINS_IGNORE_CASE,
  CONTAINS_ANY_IGNORE_CASE,
  DOES_NOT_CONTAIN_IGNORE_CASE,
})


def _quote(value: Any) -> str:
  return "'" + str(value).replace("'", "\\'") + "'"


@dataclass(frozen=True)
class Condition:
  """
  A single predicate on a named field, e.g. ``Impressions > 50``.

  Field names follow the report vocabulary (``CampaignName``, ``Impressions``,
  ...). ``CONTAINS_ANY_IGNORE_CASE`` takes a tuple of substrings and holds when
  at least one of them is contained in the field value.
  """
  field: str
  operator: str
  value: Any

  def __post_init__(self):
    if self.operator not in OPERATORS:
      raise ValueError(f"Unsupported condition operator: {self.operator}")
    if self.operator == CONTAINS_ANY_IGNORE_CASE:
      object.__setattr__(self, 'value', tuple(self.value))

  def __str__(self) -> str:
    if self.operator in (GREATER_THAN, EQUALS):
      return f"{self.field} {self.operator} {self.value}"
    if self.operator == CONTAINS_ANY_IGNORE_CASE:
      return f"{self.field} {self.operator} [{', '.join(_quote(v) for v in self.value)}]"
    return f"{self.field} {self.operator} {_quote(self.value)}"

  def matches(self, value: Any) -> bool:
    """Evaluate the condition against a field value"""
    if self.operator == GREATER_THAN:
      try:
        return float(value) > float(self.value)
      except (TypeError, ValueError):
        return False

    if self.operator == EQUALS:
      return str(value) == str(self.value)

    text = "" if value is None else str(value).lower()
    if self.operator == CONTAINS_IGNORE_CASE:
      return str(self.value).lower() in text
    if self.operator == DOES_NOT_CONTAIN_IGNORE_CASE:
      return str(self.value).lower() not in text
    return any(str(part).lower() in text for part in self.value)


@dataclass(frozen=True)
class Selector:
  """
  Immutable, restartable view over campaigns, ad groups or audiences.

  Nothing is fetched until the selector is iterated, and every iteration
  queries the platform again, so a selector can be reused freely.
  """
  platform: "AdsPlatform" = field(compare=False, repr=False)
  kind: str
  parent: Optional[TargetingEntity] = None
  conditions: Tuple[Condition, ...] = ()
  date_range: Optional[str] = None

  def with_condition(self, condition: Condition) -> "Selector":
    return replace(self, conditions=self.conditions + (condition,))

  def for_date_range(self, date_range: str) -> "Selector":
    return replace(self, date_range=date_range)

  def __iter__(self) -> Iterator[Any]:
    return iter(self.platform.select(self))

  def total_num_entities(self) -> int:
    return sum(1 for _ in self)


@dataclass(frozen=True)
class ReportQuery:
  """Report query, rendered as ``SELECT ... FROM ... WHERE ... DURING ...``"""
  fields: Tuple[str, ...]
  report_name: str
  conditions: Tuple[Condition, ...] = ()
  date_range: Optional[str] = None

  def __str__(self) -> str:
    query = f"SELECT {', '.join(self.fields)} FROM {self.report_name}"
    if self.conditions:
      query += " WHERE " + " AND ".join(str(c) for c in self.conditions)
    if self.date_range:
      query += f" DURING {self.date_range}"
    return query


class AdsPlatform:
  """
  Account access needed by the bidding pipeline.

  Subclasses provide ``select``, ``report`` and ``set_bid_modifier``; the
  selector factories are shared.
  """

  def campaigns(self) -> Selector:
    return Selector(self, SELECT_CAMPAIGNS)

  def ad_groups(self, campaign: TargetingEntity) -> Selector:
    return Selector(self, SELECT_AD_GROUPS, parent=campaign)

  def audiences(self, entity: TargetingEntity) -> Selector:
    return Selector(self, SELECT_AUDIENCES, parent=entity)

  def select(self, selector: Selector) -> Iterable[Any]:
    """Yield TargetingEntity (campaigns, ad groups) or Audience objects"""
    raise NotImplementedError

  def report(self, query: ReportQuery) -> Iterable[Dict[str, Any]]:
    """Yield one dict per report row, keyed by the requested field names"""
    raise NotImplementedError

  def set_bid_modifier(self, audience: Audience, modifier: float) -> None:
    raise NotImplementedError


# ============================================================================
# RATE LIMITER
# ============================================================================

class RateLimiter:
  """Token bucket limiting requests per second, with a small burst allowance"""

  def __init__(self, max_per_second: float = MAX_REQUESTS_PER_SECOND, burst_size: int = 3):
    self.max_per_second = max_per_second
    self.burst_size = burst_size
    self.tokens = float(burst_size)
    self.last_update_time = time.monotonic()

  def wait_if_needed(self):
    now = time.monotonic()
    self.tokens = min(self.burst_size, self.tokens + (now - self.last_update_time) * self.max_per_second)
    self.last_update_time = now

    if self.tokens < 1:
      time.sleep((1 - self.tokens) / self.max_per_second)
      self.tokens = 1

    self.tokens -= 1


# ============================================================================
# PERFORMANCE TIMING DECORATOR
# ============================================================================

def timing_logger(operation_name: str = None):
  """Decorator to log execution time of operations"""
  def decorator(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
      op_name = operation_name or func.__name__
      start_time = time.time()
      logger.info(f"Starting {op_name}...")
      try:
        result = func(*args, **kwargs)
        elapsed = time.time() - start_time
        logger.info(f"✓ {op_name} completed in {elapsed:.2f}s")
        return result
      except Exception as e:
        elapsed = time.time() - start_time
        logger.error(f"✗ {op_name} failed after {elapsed:.2f}s: {e}")
        raise
    return wrapper
  return decorator


# ============================================================================
# CONFIGURATION LOADER
# ============================================================================

class ConfigurationError(Exception):
  """Invalid configuration or audience mapping; aborts the run"""
  pass


class AuthenticationError(Exception):
  """Google Ads API authentication error"""
  pass


class Config:
  """YAML configuration with dot-notation lookup"""

  def __init__(self, config_path: str):
    self.config_path = config_path
    self.data = self._load_config()

  def _load_config(self) -> Dict:
    if not os.path.exists(self.config_path):
      error_msg = f"Configuration file not found: {self.config_path}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg)

    try:
      with open(self.config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    except yaml.YAMLError as e:
      error_msg = f"Failed to parse YAML configuration: {e}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg) from e
    except OSError as e:
      error_msg = f"Failed to read configuration file: {e}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg) from e

    if not isinstance(config, dict):
      error_msg = f"Invalid configuration format: expected dictionary, got {type(config).__name__}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg)

    logger.info(f"Configuration loaded from {self.config_path}")
    return config

  def get(self, key: str, default=None):
    """
    Get configuration value with dot notation support
    """
    if not key:
      return default

    value = self.data
    for k in key.split('.'):
      if not isinstance(value, dict):
        return default
      value = value.get(k)
      if value is None:
        return default

    return value


def _string_tuple(value: Any, name: str) -> Tuple[str, ...]:
  if value is None:
    return ()
  if isinstance(value, str):
    return (value,)
  if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
    raise ConfigurationError(f"{name} must be a list of strings, got {value!r}")
  return tuple(value)


@dataclass(frozen=True)
class BiddingSettings:
  """Validated tunables for one bidding run"""
  audience_mapping_csv_download_url: str
  date_range: str = DEFAULT_DATE_RANGE
  minimum_impressions: int = DEFAULT_MINIMUM_IMPRESSIONS
  campaign_name_does_not_contain: Tuple[str, ...] = ()
  campaign_name_contains: Tuple[str, ...] = ()

  def __post_init__(self):
    date_range = str(self.date_range or "").strip().upper()
    if date_range not in DATE_RANGES:
      raise ConfigurationError(
        f"Invalid date range {self.date_range!r}. Expected one of: {', '.join(sorted(DATE_RANGES))}"
      )
    object.__setattr__(self, 'date_range', date_range)

    if isinstance(self.minimum_impressions, bool) or not isinstance(self.minimum_impressions, int) \
        or self.minimum_impressions < 0:
      raise ConfigurationError(
        f"minimum_impressions must be a non-negative integer, got {self.minimum_impressions!r}"
      )

    object.__setattr__(self, 'campaign_name_does_not_contain', _string_tuple(
      self.campaign_name_does_not_contain, 'campaign_name_does_not_contain'))
    object.__setattr__(self, 'campaign_name_contains', _string_tuple(
      self.campaign_name_contains, 'campaign_name_contains'))

    url = urlparse(str(self.audience_mapping_csv_download_url or ""))
    if url.scheme not in ('http', 'https') or not url.netloc:
      raise ConfigurationError(
        f"audience_mapping_csv_download_url must be an http(s) URL, got {self.audience_mapping_csv_download_url!r}"
      )

  @classmethod
  def from_config(cls, config: Config) -> "BiddingSettings":
    return cls(
      audience_mapping_csv_download_url=config.get('bidding.audience_mapping_csv_download_url', ''),
      date_range=config.get('bidding.date_range', DEFAULT_DATE_RANGE),
      minimum_impressions=config.get('bidding.minimum_impressions', DEFAULT_MINIMUM_IMPRESSIONS),
      campaign_name_does_not_contain=config.get('bidding.campaign_name_does_not_contain', ()),
      campaign_name_contains=config.get('bidding.campaign_name_contains', ()),
    )


# ============================================================================
# GOOGLE SECRET MANAGER HELPER
# ============================================================================

REQUIRED_SECRET_KEYS = [
  'GOOGLE_ADS_DEVELOPER_TOKEN',
  'GOOGLE_ADS_CLIENT_ID',
  'GOOGLE_ADS_CLIENT_SECRET',
  'GOOGLE_ADS_REFRESH_TOKEN',
  'GOOGLE_ADS_CUSTOMER_ID',
]


def fetch_credentials_from_secret_manager(project_id: str, secret_id: str) -> Dict[str, str]:
  """
  Fetch Google Ads credentials from Google Secret Manager

  Args:
    project_id: GCP project ID
    secret_id: Secret name in Secret Manager

  Returns:
    Dictionary with credential keys (GOOGLE_ADS_CLIENT_ID, etc.)

  Raises:
    ImportError: If Google Secret Manager library not available
    GoogleCloudError: If unable to fetch secret
    ValueError: If secret format is invalid
  """
  if not SECRETMANAGER_AVAILABLE:
    raise ImportError(
      "Google Cloud Secret Manager library not installed. "
      "Install with: pip install google-cloud-secret-manager"
    )

  logger.info("Fetching credentials from Google Secret Manager...")
  logger.info(f"  Project: {project_id}")
  logger.info(f"  Secret: {secret_id}")

  client = secretmanager.SecretManagerServiceClient()
  name = f"projects/{project_id}/secrets/{secret_id}/versions/latest"

  try:
    response = client.access_secret_version(request={"name": name})
  except GoogleCloudError as e:
    logger.error(f"Failed to fetch credentials from Secret Manager: {e}")
    logger.error(
      "Troubleshooting:\n"
      "1. Ensure you're authenticated: gcloud auth application-default login\n"
      f"2. Verify the secret exists: gcloud secrets describe {secret_id}\n"
      "3. Check IAM permissions: roles/secretmanager.secretAccessor required"
    )
    raise

  try:
    credentials = json.loads(response.payload.data.decode('UTF-8'))
  except json.JSONDecodeError as e:
    logger.error(f"Secret '{secret_id}' is not valid JSON: {e}")
    raise ValueError(f"Invalid JSON in secret '{secret_id}'") from e

  missing_keys = [key for key in REQUIRED_SECRET_KEYS if key not in credentials]
  if missing_keys:
    raise ValueError(
      f"Secret '{secret_id}' is missing required keys: {', '.join(missing_keys)}. "
      f"Required keys: {', '.join(REQUIRED_SECRET_KEYS)}"
    )

  logger.info("✅ Successfully fetched credentials from Secret Manager")
  return credentials


# ============================================================================
# AUDIT LOGGER
# ============================================================================

AUDIT_FIELDNAMES = [f.name for f in fields(AuditEntry)]


class AuditLogger:
  """CSV-based audit trail of bid modifier changes"""

  def __init__(self, output_dir: str = "."):
    self.output_dir = output_dir
    os.makedirs(self.output_dir, exist_ok=True)
    self.filename = os.path.join(
      output_dir,
      f"audience_bid_audit_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    )
    self.entries: List[AuditEntry] = []

  def log(self, action_type: str, entity_type: str, entity_id: str, audience_id: str,
      category: str, old_value: str, new_value: str, reason: str, dry_run: bool = False):
    entry = AuditEntry(
      timestamp=datetime.now(timezone.utc).isoformat(),
      action_type=action_type,
      entity_type=entity_type,
      entity_id=entity_id,
      audience_id=audience_id,
      category=category,
      old_value=old_value,
      new_value=new_value,
      reason=reason,
      dry_run=dry_run
    )
    self.entries.append(entry)
    logger.debug(f"Audit log: {action_type} {entity_type} {entity_id} audience {audience_id}: "
           f"{old_value or '-'} -> {new_value} ({reason})")

  def save(self) -> Optional[str]:
    """Save audit trail to CSV, returning the file path"""
    if not self.entries:
      logger.info("No audit entries to save")
      return None

    try:
      with open(self.filename, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=AUDIT_FIELDNAMES)
        writer.writeheader()
        writer.writerows(asdict(entry) for entry in self.entries)
    except OSError as e:
      logger.error(f"Failed to save audit trail: {e}")
      return None

    logger.info(f"Audit trail saved to {self.filename} ({len(self.entries)} entries)")
    return self.filename


# ============================================================================
# GOOGLE ADS API CLIENT
# ============================================================================

# Report field names -> GAQL fields
FIELD_MAP = {
  'CampaignId': 'campaign.id',
  'CampaignName': 'campaign.name',
  'AdGroupId': 'ad_group.id',
  'AdGroupName': 'ad_group.name',
  'Impressions': 'metrics.impressions',
  'Conversions': 'metrics.conversions',
  'Cost': 'metrics.cost_micros',
  'CostPerAllConversion': 'metrics.cost_per_all_conversions',
}

# Values reported in millionths of the account currency
MICROS_FIELDS = frozenset({'metrics.cost_micros', 'metrics.cost_per_all_conversions'})

REPORT_RESOURCES = {
  CAMPAIGN_PERFORMANCE_REPORT: 'campaign',
  ADGROUP_PERFORMANCE_REPORT: 'ad_group',
}

AUDIENCE_CRITERION_TYPES = ('USER_INTEREST', 'USER_LIST', 'CUSTOM_AUDIENCE', 'COMBINED_AUDIENCE')

# Operators GAQL evaluates natively; the rest are applied to fetched rows
SERVER_SIDE_OPERATORS = frozenset({GREATER_THAN, EQUALS})


def normalize_customer_id(raw: Any) -> str:
  # Customer IDs are digits only; the UI shows them hyphenated
  return re.sub(r"\D+", "", str(raw or ""))


def _camel(segment: str) -> str:
  head, *rest = segment.split('_')
  return head + ''.join(part.title() for part in rest)


def _field_value(result: Dict[str, Any], path: str) -> Any:
  """Read a snake_case GAQL field from a camelCase REST result"""
  value: Any = result
  for segment in path.split('.'):
    if not isinstance(value, dict):
      return None
    value = value.get(_camel(segment))
  return value


def _gaql_literal(value: Any) -> str:
  if isinstance(value, bool):
    return str(value).upper()
  if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
    return str(value)
  return _quote(value)


def _micros_to_currency(value: Any) -> Optional[float]:
  if value is None:
    return None
  return float(value) / 1_000_000


class GoogleAdsAPI(AdsPlatform):
  """Google Ads REST API client with retry logic and rate limiting"""

  def __init__(self, customer_id: str, api_version: str = DEFAULT_API_VERSION,
         login_customer_id: str = None, max_requests_per_second: float = None,
         session: requests.Session = None):
    self.customer_id = normalize_customer_id(customer_id)
    if not self.customer_id:
      raise ConfigurationError("A Google Ads customer ID is required")
    self.api_version = api_version
    self.base_url = f"{GOOGLE_ADS_BASE_URL}/{api_version}"
    self.login_customer_id = normalize_customer_id(
      login_customer_id or os.getenv("GOOGLE_ADS_LOGIN_CUSTOMER_ID", "")
    )
    self.rate_limiter = RateLimiter(max_requests_per_second or MAX_REQUESTS_PER_SECOND)
    self.session = session or requests.Session()
    # Authenticated lazily on the first request
    self.auth: Optional[Auth] = None

  # ========================================================================
  # AUTHENTICATION AND TRANSPORT
  # ========================================================================

  def _authenticate(self) -> Auth:
    """Exchange the refresh token for an access token"""
    client_id = os.getenv("GOOGLE_ADS_CLIENT_ID", "").strip()
    client_secret = os.getenv("GOOGLE_ADS_CLIENT_SECRET", "").strip()
    refresh_token = os.getenv("GOOGLE_ADS_REFRESH_TOKEN", "").strip()

    if not all([client_id, client_secret, refresh_token]):
      logger.error("Missing required environment variables for authentication")
      raise AuthenticationError(
        "Missing required environment variables: GOOGLE_ADS_CLIENT_ID, "
        "GOOGLE_ADS_CLIENT_SECRET, or GOOGLE_ADS_REFRESH_TOKEN"
      )

    payload = {
      "grant_type": "refresh_token",
      "refresh_token": refresh_token,
      "client_id": client_id,
      "client_secret": client_secret,
    }

    try:
      logger.debug(f"POST {TOKEN_URL}")
      response = self.session.post(TOKEN_URL, data=payload, timeout=30)
      response.raise_for_status()
      data = response.json()
      auth = Auth(
        access_token=data["access_token"].strip(),
        token_type=data.get("token_type", "Bearer"),
        expires_at=time.time() + int(data.get("expires_in", 3600))
      )
    except requests.exceptions.RequestException as e:
      logger.error(f"Authentication request failed: {e}")
      raise AuthenticationError(f"Failed to authenticate with Google Ads API: {e}") from e
    except (KeyError, ValueError, AttributeError) as e:
      logger.error(f"Invalid authentication response: {e}")
      raise AuthenticationError(f"Invalid response from OAuth token endpoint: {e}") from e

    logger.info("Successfully authenticated with Google Ads API")
    return auth

  def _headers(self) -> Dict[str, str]:
    if self.auth is None or self.auth.is_expired():
      self.auth = self._authenticate()

    developer_token = os.getenv("GOOGLE_ADS_DEVELOPER_TOKEN", "").strip()
    if not developer_token:
      raise AuthenticationError("Missing required environment variable: GOOGLE_ADS_DEVELOPER_TOKEN")

    headers = {
      "Authorization": f"Bearer {self.auth.access_token}",
      "developer-token": developer_token,
      "Content-Type": "application/json",
      "Accept": "application/json",
      "User-Agent": USER_AGENT,
    }
    if self.login_customer_id:
      headers["login-customer-id"] = self.login_customer_id
    return headers

  def _retry_delay(self, response: requests.Response, default: float) -> float:
    # Retry-After may also be an HTTP date; only the seconds form is honoured
    try:
      return max(float(response.headers['Retry-After']), 0)
    except (KeyError, TypeError, ValueError):
      return default

  def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
    """
    Make an API request with rate limiting.

    Throttling (429), server errors and connection failures are retried with
    backoff; a 401 triggers one re-authentication, which does not use up an
    attempt. Anything else is raised.
    """
    url = f"{self.base_url}{endpoint}"
    max_retries = 3
    retry_delay = 1
    reauth_attempted = False
    attempt = 0

    while True:
      self.rate_limiter.wait_if_needed()
      last_attempt = attempt == max_retries - 1
      logger.debug(f"Google Ads API {method} {url} (attempt {attempt + 1}/{max_retries})")

      try:
        response = self.session.request(
          method=method,
          url=url,
          headers=self._headers(),
          timeout=60,
          **kwargs
        )
      except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        if last_attempt:
          logger.error(f"Request exception after {max_retries} attempts: {e}")
          raise
        logger.warning(f"Request exception (attempt {attempt + 1}/{max_retries}): {e}")
        time.sleep(retry_delay * (attempt + 1))
        attempt += 1
        continue

      if response.status_code == 401 and not reauth_attempted:
        logger.info("Received 401 from Google Ads API; refreshing credentials and retrying")
        self.auth = None
        reauth_attempted = True
        continue

      if (response.status_code == 429 or response.status_code >= 500) and not last_attempt:
        retry_after = self._retry_delay(response, retry_delay * (attempt + 1) * 2)
        logger.warning(f"Google Ads API returned {response.status_code}, retrying in {retry_after}s...")
        time.sleep(retry_after)
        attempt += 1
        continue

      if response.status_code >= 400:
        body_preview = response.text[:1000] if response.text else 'Empty response'
        logger.error(f"Google Ads API error {response.status_code} on {method} {url}: {body_preview}")

      response.raise_for_status()
      return response

  def _search(self, query: str) -> Iterator[Dict[str, Any]]:
    """Run a GAQL query, following nextPageToken until exhausted"""
    logger.debug(f"GAQL: {query}")
    page_token = None
    while True:
      payload = {"query": query}
      if page_token:
        payload["pageToken"] = page_token
      response = self._request('POST', f"/customers/{self.customer_id}/googleAds:search", json=payload)
      data = response.json() if response.content else {}
      yield from data.get('results', [])
      page_token = data.get('nextPageToken')
      if not page_token:
        return

  # ========================================================================
  # QUERY BUILDING
  # ========================================================================

  @staticmethod
  def _gaql_field(name: str) -> str:
    try:
      return FIELD_MAP[name]
    except KeyError:
      raise ValueError(f"Unsupported field: {name}") from None

  def _split_conditions(self, conditions: Iterable[Condition]) -> Tuple[List[Condition], List[Condition]]:
    remote, local = [], []
    for condition in conditions:
      self._gaql_field(condition.field)
      (remote if condition.operator in SERVER_SIDE_OPERATORS else local).append(condition)
    return remote, local

  def build_query(self, resource: str, select_fields: Iterable[str], conditions: Iterable[Condition] = (),
          date_range: str = None, where: Iterable[str] = ()) -> str:
    """Build a GAQL query; every condition field is also selected"""
    conditions = list(conditions)
    selected = list(dict.fromkeys(
      list(select_fields) + [self._gaql_field(c.field) for c in conditions]
    ))
    clauses = list(where) + [
      f"{self._gaql_field(c.field)} {c.operator} {_gaql_literal(c.value)}" for c in conditions
    ]
    if date_range:
      clauses.append(f"segments.date DURING {date_range}")

    query = f"SELECT {', '.join(selected)} FROM {resource}"
    if clauses:
      query += " WHERE " + " AND ".join(clauses)
    return query

  def _run_with_local_conditions(self, resource: str, select_fields: List[str], conditions: Iterable[Condition],
                  date_range: Optional[str], where: List[str]) -> Iterator[Dict[str, Any]]:
    remote, local = self._split_conditions(conditions)
    select_fields = select_fields + [self._gaql_field(c.field) for c in local]
    query = self.build_query(resource, select_fields, remote, date_range, where)
    for result in self._search(query):
      if all(c.matches(_field_value(result, self._gaql_field(c.field))) for c in local):
        yield result

  def _audience_query_parts(self, selector: Selector) -> Tuple[str, str, List[str], List[str]]:
    parent = selector.parent
    if parent.is_campaign:
      criterion, view, parent_field = 'campaign_criterion', 'campaign_audience_view', 'campaign.id'
    else:
      criterion, view, parent_field = 'ad_group_criterion', 'ad_group_audience_view', 'ad_group.id'

    select_fields = [
      parent_field,
      f"{criterion}.resource_name",
      f"{criterion}.criterion_id",
      f"{criterion}.type",
      f"{criterion}.user_interest.user_interest_category",
      f"{criterion}.bid_modifier",
    ]
    # Excluded audiences are negative criteria and never count as targeting
    where = [
      f"{parent_field} = {_gaql_literal(parent.entity_id)}",
      f"{criterion}.status != 'REMOVED'",
      f"{criterion}.negative = FALSE",
    ]

    if selector.date_range:
      # In-market audiences are always USER_INTEREST criteria
      select_fields += ['metrics.impressions', 'metrics.conversions', 'metrics.cost_micros']
      where.append(f"{criterion}.type = 'USER_INTEREST'")
      return view, criterion, select_fields, where

    # Without a date range, count attachments even if they never served
    types = ", ".join(_quote(t) for t in AUDIENCE_CRITERION_TYPES)
    where.append(f"{criterion}.type IN ({types})")
    return criterion, criterion, select_fields, where

  # ========================================================================
  # PLATFORM INTERFACE
  # ========================================================================

  def select(self, selector: Selector) -> Iterator[Any]:
    if selector.kind == SELECT_CAMPAIGNS:
      results = self._run_with_local_conditions(
        'campaign', ['campaign.id', 'campaign.name'], selector.conditions, selector.date_range,
        ["campaign.status != 'REMOVED'"]
      )
      for result in results:
        campaign_id = str(_field_value(result, 'campaign.id'))
        yield TargetingEntity(
          entity_id=campaign_id,
          name=_field_value(result, 'campaign.name') or '',
          level=CAMPAIGN_LEVEL,
          campaign_id=campaign_id,
        )

    elif selector.kind == SELECT_AD_GROUPS:
      results = self._run_with_local_conditions(
        'ad_group', ['ad_group.id', 'ad_group.name', 'campaign.id'], selector.conditions, selector.date_range,
        [f"campaign.id = {_gaql_literal(selector.parent.entity_id)}", "ad_group.status != 'REMOVED'"]
      )
      for result in results:
        yield TargetingEntity(
          entity_id=str(_field_value(result, 'ad_group.id')),
          name=_field_value(result, 'ad_group.name') or '',
          level=AD_GROUP_LEVEL,
          campaign_id=str(_field_value(result, 'campaign.id')),
        )

    elif selector.kind == SELECT_AUDIENCES:
      resource, criterion, select_fields, where = self._audience_query_parts(selector)
      results = self._run_with_local_conditions(
        resource, select_fields, selector.conditions, selector.date_range, where
      )
      for result in results:
        yield self._to_audience(result, criterion, selector.parent)

    else:
      raise ValueError(f"Unknown selector kind: {selector.kind}")

  @staticmethod
  def _to_audience(result: Dict[str, Any], criterion: str, entity: TargetingEntity) -> Audience:
    criterion_id = str(_field_value(result, f"{criterion}.criterion_id"))
    # customers/123/userInterests/80432 -> 80432
    category = _field_value(result, f"{criterion}.user_interest.user_interest_category")
    audience_id = category.rsplit('/', 1)[-1] if category else criterion_id
    bid_modifier = _field_value(result, f"{criterion}.bid_modifier")

    return Audience(
      audience_id=audience_id,
      criterion_id=criterion_id,
      resource_name=_field_value(result, f"{criterion}.resource_name") or '',
      entity=entity,
      stats=AudienceStats(
        impressions=int(_field_value(result, 'metrics.impressions') or 0),
        conversions=float(_field_value(result, 'metrics.conversions') or 0.0),
        cost=_micros_to_currency(_field_value(result, 'metrics.cost_micros')) or 0.0,
      ),
      bid_modifier=float(bid_modifier) if bid_modifier is not None else None,
    )

  def report(self, query: ReportQuery) -> Iterator[Dict[str, Any]]:
    resource = REPORT_RESOURCES.get(query.report_name)
    if resource is None:
      raise ValueError(f"Unsupported report: {query.report_name}")

    logger.debug(f"Report query: {query}")
    paths = {name: self._gaql_field(name) for name in query.fields}
    results = self._run_with_local_conditions(
      resource, list(paths.values()), query.conditions, query.date_range,
      [f"{resource}.status != 'REMOVED'"]
    )
    for result in results:
      row = {}
      for name, path in paths.items():
        value = _field_value(result, path)
        row[name] = _micros_to_currency(value) if path in MICROS_FIELDS else value
      yield row

  def set_bid_modifier(self, audience: Audience, modifier: float) -> None:
    service = 'campaignCriteria' if audience.entity.is_campaign else 'adGroupCriteria'
    payload = {
      "operations": [{
        "update": {"resourceName": audience.resource_name, "bidModifier": modifier},
        "updateMask": "bidModifier",
      }]
    }
    self._request('POST', f"/customers/{self.customer_id}/{service}:mutate", json=payload)
    logger.debug(f"Set bid modifier {modifier:.4f} on {audience.resource_name}")

  def verify_connection(self, sample_size: int = 5) -> Dict[str, Any]:
    """Verify API connectivity by retrieving a small campaign sample"""
    try:
      query = self.build_query('campaign', ['campaign.id', 'campaign.name', 'campaign.status'])
      sample = []
      for result in self._search(f"{query} LIMIT {max(sample_size, 1)}"):
        sample.append({
          "campaignId": _field_value(result, 'campaign.id'),
          "name": _field_value(result, 'campaign.name'),
          "status": _field_value(result, 'campaign.status'),
        })
    except (requests.exceptions.RequestException, AuthenticationError) as exc:
      logger.error(f"Google Ads API verification failed: {exc}")
      return {"success": False, "error": str(exc)}

    logger.info(f"Google Ads API connectivity verified. Retrieved {len(sample)} campaigns.")
    return {"success": True, "campaign_count": len(sample), "sample": sample}


# ============================================================================
# AUDIENCE MAPPING
# ============================================================================

def parse_audience_mapping(text: str) -> Mapping[str, str]:
  """
  Parse the in-market audience CSV into a read-only criterion ID -> category map.

  Both ``Criterion ID`` and ``Category`` headers must be present (exact,
  case-sensitive). Later rows win over earlier ones with the same ID.
  """
  rows = csv.reader(io.StringIO(text.lstrip('\ufeff')))
  headers = next(rows, None) or []

  if CRITERION_ID_HEADER not in headers or CATEGORY_HEADER not in headers:
    raise ConfigurationError(
      f"The audience CSV does not have the expected headers "
      f"'{CRITERION_ID_HEADER}' and '{CATEGORY_HEADER}' (found: {headers})"
    )

  index_of_id = headers.index(CRITERION_ID_HEADER)
  index_of_name = headers.index(CATEGORY_HEADER)
  width = max(index_of_id, index_of_name) + 1

  return MappingProxyType(dict(
    (row[index_of_id].strip(), row[index_of_name].strip())
    for row in rows
    if len(row) >= width and row[index_of_id].strip()
  ))


class AudienceMappingLoader:
  """Downloads the published in-market audience list"""

  def __init__(self, session: requests.Session = None, timeout: int = 60):
    self.session = session or requests.Session()
    self.timeout = timeout

  @timing_logger("Audience mapping download")
  def load(self, url: str) -> Mapping[str, str]:
    response = self.session.get(url, timeout=self.timeout)
    response.raise_for_status()
    response.encoding = 'utf-8'
    mapping = parse_audience_mapping(response.text)
    logger.info(f"Loaded {len(mapping)} in-market audience categories")
    return mapping


# ============================================================================
# PIPELINE COMPONENTS
# ============================================================================

def impressions_condition(settings: BiddingSettings) -> Condition:
  return Condition('Impressions', GREATER_THAN, settings.minimum_impressions)


def filter_by_date_and_impressions(selector: Selector, settings: BiddingSettings) -> Selector:
  return selector.for_date_range(settings.date_range).with_condition(impressions_condition(settings))


def campaign_name_conditions(settings: BiddingSettings) -> Tuple[Condition, ...]:
  """Exclude on any DOES_NOT_CONTAIN match; require at least one CONTAINS match"""
  conditions = tuple(
    Condition('CampaignName', DOES_NOT_CONTAIN_IGNORE_CASE, part)
    for part in settings.campaign_name_does_not_contain
  )
  if settings.campaign_name_contains:
    conditions += (Condition('CampaignName', CONTAINS_ANY_IGNORE_CASE, settings.campaign_name_contains),)
  return conditions


def parse_cpa(value: Any) -> Optional[float]:
  """
  Coerce a reported cost per conversion to a float.

  Reports may hand back numbers or strings such as ``"1,234.50"``. Missing,
  non-numeric, non-finite and non-positive values all mean the entity has no
  usable baseline and yield ``None``.
  """
  if value is None or isinstance(value, bool):
    return None
  if isinstance(value, str):
    value = value.replace(',', '').strip()
    if not value or value == '--':
      return None
  try:
    cpa = float(value)
  except (TypeError, ValueError):
    logger.warning(f"Ignoring non-numeric cost per conversion: {value!r}")
    return None
  if not math.isfinite(cpa) or cpa <= 0:
    return None
  return cpa


def compute_modifier(entity_cpa: float, audience_cost: float, audience_conversions: float) -> float:
  return entity_cpa / (audience_cost / audience_conversions)


class PerformanceFetcher:
  """Cost per all conversions by campaign or ad group"""

  def __init__(self, platform: AdsPlatform, settings: BiddingSettings):
    self.platform = platform
    self.settings = settings

  def fetch(self, entity_id_field: str, report_name: str) -> Mapping[str, Any]:
    query = ReportQuery(
      fields=(entity_id_field, 'CostPerAllConversion'),
      report_name=report_name,
      conditions=(impressions_condition(self.settings),),
      date_range=self.settings.date_range,
    )
    logger.debug(f"Running report: {query}")
    performance = MappingProxyType(dict(
      (str(row[entity_id_field]), row.get('CostPerAllConversion'))
      for row in self.platform.report(query)
    ))
    logger.info(f"{report_name}: {len(performance)} entities above {self.settings.minimum_impressions} impressions")
    return performance

  @timing_logger("Campaign performance report")
  def campaign_performance(self) -> Mapping[str, Any]:
    return self.fetch('CampaignId', CAMPAIGN_PERFORMANCE_REPORT)

  @timing_logger("Ad group performance report")
  def ad_group_performance(self) -> Mapping[str, Any]:
    return self.fetch('AdGroupId', ADGROUP_PERFORMANCE_REPORT)


class EntitySelector:
  """Chooses the campaigns and ad groups whose audiences get modifiers"""

  def __init__(self, platform: AdsPlatform, settings: BiddingSettings):
    self.platform = platform
    self.settings = settings

  def campaigns(self) -> Selector:
    selector = self.platform.campaigns()
    for condition in campaign_name_conditions(self.settings):
      selector = selector.with_condition(condition)
    return filter_by_date_and_impressions(selector, self.settings)

  def ad_groups(self, campaign: TargetingEntity) -> Selector:
    return filter_by_date_and_impressions(self.platform.ad_groups(campaign), self.settings)

  def campaign_has_campaign_level_audiences(self, campaign: TargetingEntity) -> bool:
    return self.platform.audiences(campaign).total_num_entities() > 0

  def targeting_entities(self) -> Iterator[TargetingEntity]:
    """
    Yield each selected campaign, or its ad groups when it has no
    campaign-level audiences. A campaign can't have both ad-group-level and
    campaign-level audiences, so the two are never mixed.
    """
    for campaign in self.campaigns():
      if self.campaign_has_campaign_level_audiences(campaign):
        logger.debug(f"Campaign {campaign.name} ({campaign.entity_id}): campaign-level audiences")
        yield campaign
      else:
        logger.debug(f"Campaign {campaign.name} ({campaign.entity_id}): ad-group-level audiences")
        yield from self.ad_groups(campaign)


class ModifierCalculator:
  """Turns an entity's audiences into bid operations relative to its CPA"""

  def __init__(self, platform: AdsPlatform, settings: BiddingSettings, audience_mapping: Mapping[str, str]):
    self.platform = platform
    self.settings = settings
    self.audience_mapping = audience_mapping

  def in_market_audiences(self, entity: TargetingEntity) -> Iterator[Audience]:
    for audience in filter_by_date_and_impressions(self.platform.audiences(entity), self.settings):
      if audience.audience_id in self.audience_mapping:
        yield audience
      else:
        logger.debug(f"Audience {audience.audience_id} on {entity.entity_id} is not an in-market audience, skipped")

  def make_operation(self, audience: Audience, entity_cpa: float) -> Optional[BidOperation]:
    stats = audience.stats
    if stats.conversions <= 0:
      logger.debug(f"Audience {audience.audience_id} on {audience.entity.entity_id}: no conversions, skipped")
      return None
    if stats.cost <= 0:
      logger.warning(
        f"Audience {audience.audience_id} on {audience.entity.entity_id} has "
        f"{stats.conversions:g} conversions but no cost, skipped"
      )
      return None

    return BidOperation(
      audience=audience,
      modifier=compute_modifier(entity_cpa, stats.cost, stats.conversions),
      entity_cpa=entity_cpa,
      category=self.audience_mapping.get(audience.audience_id, ''),
    )

  def operations_for(self, entity: TargetingEntity, baseline: Any) -> Tuple[BidOperation, ...]:
    entity_cpa = parse_cpa(baseline)
    if entity_cpa is None:
      logger.info(f"No cost per conversion for {entity.level} {entity.name} ({entity.entity_id}), skipping its audiences")
      return ()

    operations = (self.make_operation(audience, entity_cpa) for audience in self.in_market_audiences(entity))
    return tuple(operation for operation in operations if operation is not None)


def baseline_for(entity: TargetingEntity, campaign_performance: Mapping[str, Any],
         ad_group_performance: Mapping[str, Any]) -> Any:
  performance = campaign_performance if entity.is_campaign else ad_group_performance
  return performance.get(entity.entity_id)


def make_all_operations(entities: Iterable[TargetingEntity], calculator: ModifierCalculator,
            campaign_performance: Mapping[str, Any],
            ad_group_performance: Mapping[str, Any]) -> Tuple[BidOperation, ...]:
  return tuple(chain.from_iterable(
    calculator.operations_for(entity, baseline_for(entity, campaign_performance, ad_group_performance))
    for entity in entities
  ))


class BidApplier:
  """Writes bid modifiers, one call per operation"""

  def __init__(self, platform: AdsPlatform, audit_logger: AuditLogger):
    self.platform = platform
    self.audit = audit_logger

  def apply(self, operations: Iterable[BidOperation], dry_run: bool = False) -> int:
    applied = 0
    for operation in operations:
      audience = operation.audience
      if not dry_run:
        self.platform.set_bid_modifier(audience, operation.modifier)
        applied += 1

      self.audit.log(
        'BID_MODIFIER_UPDATE',
        f"{audience.entity.level.upper()}_AUDIENCE",
        audience.entity.entity_id,
        audience.audience_id,
        operation.category,
        f"{audience.bid_modifier:.4f}" if audience.bid_modifier is not None else '',
        f"{operation.modifier:.4f}",
        f"Entity CPA {operation.entity_cpa:.2f} / audience CPA {operation.audience_cpa:.2f}",
        dry_run
      )
    return applied


# ============================================================================
# PIPELINE
# ============================================================================

def run_audience_bidding(settings: BiddingSettings, platform: AdsPlatform, audit_logger: AuditLogger,
             dry_run: bool = False, mapping_loader: AudienceMappingLoader = None) -> Dict[str, Any]:
  """One stateless pass: mapping, baselines, entities, operations, writes"""
  start_time = time.time()
  mapping_loader = mapping_loader or AudienceMappingLoader()

  logger.info("Getting audience mapping")
  audience_mapping = mapping_loader.load(settings.audience_mapping_csv_download_url)

  fetcher = PerformanceFetcher(platform, settings)
  logger.info("Getting campaign performance")
  campaign_performance = fetcher.campaign_performance()

  logger.info("Getting ad group performance")
  ad_group_performance = fetcher.ad_group_performance()

  logger.info("Making operations")
  entities = tuple(EntitySelector(platform, settings).targeting_entities())
  calculator = ModifierCalculator(platform, settings, audience_mapping)
  operations = make_all_operations(entities, calculator, campaign_performance, ad_group_performance)
  logger.info(f"{len(operations)} bid modifier operations from {len(entities)} entities")

  logger.info("Applying bids")
  applied = BidApplier(platform, audit_logger).apply(operations, dry_run)

  elapsed = time.time() - start_time
  return {
    'entities_analyzed': len(entities),
    'campaign_level_campaigns': sum(1 for e in entities if e.is_campaign),
    'ad_groups_analyzed': sum(1 for e in entities if not e.is_campaign),
    'entities_without_baseline': sum(
      1 for e in entities
      if parse_cpa(baseline_for(e, campaign_performance, ad_group_performance)) is None
    ),
    'operations': len(operations),
    'modifiers_applied': applied,
    'dry_run': dry_run,
    'execution_time_seconds': round(elapsed, 2),
  }


# ============================================================================
# MAIN AUTOMATION ORCHESTRATOR
# ============================================================================

class InMarketAudienceBidding:
  """Wires configuration, credentials, the API client and the audit trail"""

  def __init__(self, config_path: str, customer_id: str = None, dry_run: bool = False,
         platform: AdsPlatform = None, session: requests.Session = None):
    self.config = Config(config_path)
    self.settings = BiddingSettings.from_config(self.config)
    self.dry_run = dry_run
    self.session = session or requests.Session()

    # Check if Google Secret Manager is configured
    gcp_project_id = self.config.get('google_cloud.project_id')
    secret_id = self.config.get('google_cloud.secret_id')

    if platform is None and gcp_project_id and secret_id:
      logger.info("Google Secret Manager configured - fetching credentials...")
      try:
        credentials = fetch_credentials_from_secret_manager(gcp_project_id, secret_id)
      except (ImportError, ValueError, GoogleCloudError) as e:
        logger.error(f"Failed to load credentials from Secret Manager: {e}")
        logger.info("Falling back to environment variables...")
      else:
        for key in REQUIRED_SECRET_KEYS:
          os.environ[key] = str(credentials[key])
        logger.info("✅ Credentials loaded from Google Secret Manager")

    self.customer_id = normalize_customer_id(customer_id or os.getenv("GOOGLE_ADS_CUSTOMER_ID", ""))

    self.platform = platform or GoogleAdsAPI(
      self.customer_id,
      api_version=self.config.get('api.version', DEFAULT_API_VERSION),
      login_customer_id=self.config.get('api.login_customer_id'),
      max_requests_per_second=self.config.get('api.max_requests_per_second', MAX_REQUESTS_PER_SECOND),
    )

    self.audit = AuditLogger(self.config.get('logging.output_dir', './logs'))

  def run(self) -> Dict[str, Any]:
    logger.info("=" * 80)
    logger.info("IN-MARKET AUDIENCE BIDDING")
    logger.info("=" * 80)
    logger.info(f"Customer ID: {self.customer_id or 'n/a'}")
    logger.info(f"Date Range: {self.settings.date_range}")
    logger.info(f"Minimum Impressions: {self.settings.minimum_impressions}")
    logger.info(f"Dry Run: {self.dry_run}")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info("=" * 80)

    try:
      results = run_audience_bidding(
        self.settings,
        self.platform,
        self.audit,
        dry_run=self.dry_run,
        mapping_loader=AudienceMappingLoader(self.session),
      )
    finally:
      self.audit.save()

    logger.info("=" * 80)
    logger.info("BIDDING SUMMARY")
    logger.info("=" * 80)
    for key, value in results.items():
      logger.info(f"  {key.replace('_', ' ')}: {value}")
    logger.info("=" * 80)

    return results


# ============================================================================
# CLI
# ============================================================================

def main():
  parser = argparse.ArgumentParser(description='In-Market Audience Bidding')
  parser.add_argument('--config', required=True, help='Path to configuration YAML file')
  parser.add_argument('--customer-id', help='Google Ads customer ID (overrides GOOGLE_ADS_CUSTOMER_ID)')
  parser.add_argument('--dry-run', action='store_true', help='Compute modifiers without writing them')
  parser.add_argument('--verify-connection', action='store_true',
            help='Check Google Ads API connectivity and exit')
  parser.add_argument('--verify-sample-size', type=int, default=5,
            help='Number of campaigns to include in verification sample (default: 5)')
  parser.add_argument('--log-dir', default='./logs', help='Directory for log files (default: ./logs)')

  args = parser.parse_args()

  # The customer ID may also come from Secret Manager, so it is checked once credentials are resolved
  configure_logging(args.log_dir)

  automation = InMarketAudienceBidding(args.config, args.customer_id, args.dry_run)

  if args.verify_connection:
    verification = automation.platform.verify_connection(args.verify_sample_size)
    print(json.dumps(verification, indent=2))
    sys.exit(0 if verification.get('success') else 1)

  automation.run()


if __name__ == '__main__':
  main()
