"""SQLAlchemy database models."""
from dotenv import load_dotenv
from keyword_scheduler.models.base import Base
from keyword_scheduler.models.coverage import CoverageArea
from keyword_scheduler.models.cycle import CycleRecord
from keyword_scheduler.models.entity import DemandMetric, EngagementEvent, Entity
from keyword_scheduler.models.keyword_attempt import KeywordAttemptHistory
from keyword_scheduler.models.unmet_demand import UnmetDemandContribution, UnmetDemandTerm


load_dotenv()

__all__ = [
    "Base",
    "Entity",
    "EngagementEvent",
    "DemandMetric",
    "CoverageArea",
    "UnmetDemandTerm",
    "UnmetDemandContribution",
    "KeywordAttemptHistory",
    "CycleRecord",
]
