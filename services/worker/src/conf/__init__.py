from typing import Literal

from pydantic import BaseModel

from models.operations.settings import EngineSettings, OfferAcceptPolicy
from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class SchedulerConf(BaseModel):
    interval_seconds: int
    retention_days: int
    archive_batch_size: int
    sweep_offers: bool

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## Storage ##

STORE_BACKEND = EnvVarSpec(
    id="STORE_BACKEND",
    default="couchbase",
    parse=lambda x: x.lower(),
    type=(Literal["couchbase", "memory"], ...),
)

## Scheduler ##

AUCTION_SCHEDULER_INTERVAL_SECONDS = EnvVarSpec(
    id="AUCTION_SCHEDULER_INTERVAL_SECONDS",
    default="60",
    parse=int,
    type=(int, ...),
)

AUCTION_RETENTION_DAYS = EnvVarSpec(
    id="AUCTION_RETENTION_DAYS",
    default="30",
    parse=int,
    type=(int, ...),
)

AUCTION_ARCHIVE_BATCH_SIZE = EnvVarSpec(
    id="AUCTION_ARCHIVE_BATCH_SIZE",
    default="100",
    parse=int,
    type=(int, ...),
)

AUCTION_OFFER_SWEEP_ENABLED = EnvVarSpec(
    id="AUCTION_OFFER_SWEEP_ENABLED",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Engine ##

AUCTION_ANTI_SNIPE_WINDOW_SECONDS = EnvVarSpec(
    id="AUCTION_ANTI_SNIPE_WINDOW_SECONDS",
    default="60",
    parse=int,
    type=(int, ...),
)

AUCTION_OFFER_TTL_HOURS = EnvVarSpec(
    id="AUCTION_OFFER_TTL_HOURS",
    default="24",
    parse=int,
    type=(int, ...),
)

AUCTION_CAS_MAX_RETRIES = EnvVarSpec(
    id="AUCTION_CAS_MAX_RETRIES",
    default="5",
    parse=int,
    type=(int, ...),
)

AUCTION_OFFER_ACCEPT_POLICY = EnvVarSpec(
    id="AUCTION_OFFER_ACCEPT_POLICY",
    default=OfferAcceptPolicy.KEEP_OPEN.value,
    parse=lambda x: OfferAcceptPolicy(x.lower()),
    type=(OfferAcceptPolicy, ...),
)

## Couchbase ##
## NOTE: connection variables (COUCHBASE_*) are read by clients.couchbase.config
## and validated on first connection.

#### Validation ####
VALIDATED_ENV_VARS = [
    LOG_LEVEL,
    ENVIRONMENT,
    STORE_BACKEND,
    AUCTION_SCHEDULER_INTERVAL_SECONDS,
    AUCTION_RETENTION_DAYS,
    AUCTION_ARCHIVE_BATCH_SIZE,
    AUCTION_OFFER_SWEEP_ENABLED,
    AUCTION_ANTI_SNIPE_WINDOW_SECONDS,
    AUCTION_OFFER_TTL_HOURS,
    AUCTION_CAS_MAX_RETRIES,
    AUCTION_OFFER_ACCEPT_POLICY,
]

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

#### Getters ####

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_environment() -> str:
    return env.parse(ENVIRONMENT)

def get_store_backend() -> str:
    return env.parse(STORE_BACKEND)

def get_engine_settings() -> EngineSettings:
    """Engine settings; pydantic rejects out-of-range values."""
    return EngineSettings(
        anti_snipe_window_seconds=env.parse(AUCTION_ANTI_SNIPE_WINDOW_SECONDS),
        offer_ttl_hours=env.parse(AUCTION_OFFER_TTL_HOURS),
        max_retries=env.parse(AUCTION_CAS_MAX_RETRIES),
        offer_accept_policy=env.parse(AUCTION_OFFER_ACCEPT_POLICY),
    )

def get_scheduler_conf() -> SchedulerConf:
    interval_seconds = env.parse(AUCTION_SCHEDULER_INTERVAL_SECONDS)
    retention_days = env.parse(AUCTION_RETENTION_DAYS)
    archive_batch_size = env.parse(AUCTION_ARCHIVE_BATCH_SIZE)

    interval_seconds = max(1, interval_seconds)
    retention_days = max(0, retention_days)
    archive_batch_size = max(1, archive_batch_size)

    return SchedulerConf(
        interval_seconds=interval_seconds,
        retention_days=retention_days,
        archive_batch_size=archive_batch_size,
        sweep_offers=env.parse(AUCTION_OFFER_SWEEP_ENABLED),
    )
