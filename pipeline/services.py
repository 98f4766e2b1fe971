"""Process-wide wiring of registry clients and the match engine."""

from __future__ import annotations

from logging_utils import get_logger
from pipeline.match_engine import MatchEngine
from settings import get_setting
from utils.companies_house_api import CompaniesHouseClient
from utils.council_directory import CouncilDirectoryClient
from utils.gov_uk_api import GovUkClient
from utils.nhs_ods_api import NhsOdsClient
from utils.registry_base import RegistryClient

logger = get_logger(__name__)


def build_registry_clients() -> dict[str, RegistryClient]:
    """One client per registry; each owns the rate limiter for that registry."""

    clients: dict[str, RegistryClient] = {}
    if get_setting("COMPANIES_HOUSE_API_KEY"):
        clients["company"] = CompaniesHouseClient()
    else:
        logger.warning("COMPANIES_HOUSE_API_KEY not set; company matching disabled")
    clients["healthcare_provider"] = NhsOdsClient()
    clients["local_government"] = CouncilDirectoryClient()
    clients["national_government"] = GovUkClient()
    return clients


def build_match_engine() -> MatchEngine:
    engine = MatchEngine(build_registry_clients())
    logger.info("Match engine ready | registries=%s", sorted(engine.registries))
    return engine
