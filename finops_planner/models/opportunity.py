"""Opportunity: a single resource-level cost-saving finding."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Service(str, Enum):
    EC2 = "EC2"
    EBS = "EBS"
    RDS = "RDS"
    S3 = "S3"


class OpportunityType(str, Enum):
    EC2_RIGHTSIZE = "EC2_RIGHTSIZE"
    EC2_OFFHOURS = "EC2_OFFHOURS"
    EBS_UNUSED = "EBS_UNUSED"
    S3_LIFECYCLE = "S3_LIFECYCLE"
    RDS_OFFHOURS = "RDS_OFFHOURS"
    RDS_RIGHTSIZE = "RDS_RIGHTSIZE"


class Environment(str, Enum):
    DEV = "DEV"
    TEST = "TEST"
    PROD = "PROD"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Opportunity(BaseModel):
    """
    A flagged finding produced by the external discovery process.

    Read-only from the kernel's point of view: plans carry snapshots of these
    records, never references that could change underneath them.
    """

    id: str
    service: Service
    type: OpportunityType
    resource: str                            # e.g., "i-0abc123", "vol-0def456"
    env: Environment
    risk: RiskLevel
    est_savings_usd_month: float = Field(ge=0)
    confidence_score: Optional[float] = Field(default=None, ge=0, le=100)
    metrics: dict = {}                       # Opaque, never interpreted here
    application: Optional[str] = None
    owner: Optional[str] = None
