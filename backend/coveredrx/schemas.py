# backend/coveredrx/schemas.py
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional, Any


class CamelModel(BaseModel):
    """Wire models: camelCase on the JSON side, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- medication identity -----------------------------------------------------

class Medication(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    ndc: Optional[str] = None  # national drug code


class NormalizationResult(BaseModel):
    medication: Medication
    confidence: float = Field(ge=0.0, le=1.0)
    search_results: Optional[str] = None


# --- static formulary files (external snake_case schema) ---------------------

class FormularyEntry(BaseModel):
    generic_name: str
    brand_names: List[str] = []
    tier: int = Field(ge=1, le=5)
    copay: float
    prior_auth: bool = False
    prior_auth_criteria: Optional[str] = None
    quantity_limits: bool = False
    quantity_limit_details: Optional[str] = None
    step_therapy: bool = False
    step_therapy_alternatives: List[str] = []
    alternatives: List[str] = []
    specialty_pharmacy_required: Optional[bool] = None
    infusion_required: Optional[bool] = None


class TierInfo(BaseModel):
    name: str
    copay: Optional[float] = None
    description: Optional[str] = None


class FormularyPlan(BaseModel):
    plan_id: str
    plan_name: str
    carrier: str
    type: str
    tier_structure: Dict[str, TierInfo] = {}
    formulary: Dict[str, FormularyEntry] = {}
    coverage_policies: Any = None


class FormularyLookup(BaseModel):
    found: bool
    entry: Optional[FormularyEntry] = None
    matched_key: Optional[str] = None
    plan: Optional[FormularyPlan] = None


# --- remote retrieval agent reply (external snake_case schema) ---------------

class SuggestedAlternative(BaseModel):
    name: str
    tier: Optional[int] = None
    copay: Optional[float] = None
    prior_auth: bool = False
    reason: str = ""

    @field_validator("prior_auth", "reason", mode="before")
    @classmethod
    def _null_as_default(cls, value, info):
        if value is None:
            return cls.model_fields[info.field_name].default
        return value


class ToolhouseCoverageResponse(BaseModel):
    is_covered: Optional[bool] = None
    tier: Optional[int] = None
    copay: Optional[float] = None
    prior_auth_required: bool = False
    prior_auth_details: Optional[str] = None
    quantity_limits: bool = False
    quantity_limit_details: Optional[str] = None
    step_therapy_required: bool = False
    step_therapy_alternatives: Optional[List[str]] = None
    suggested_alternatives: Optional[List[SuggestedAlternative]] = None
    pharmacy_notes: Optional[str] = None
    explanation: str = ""
    data_source: str = "toolhouse_rag"

    # the agent sends null for side fields it has no answer for
    @field_validator("prior_auth_required", "quantity_limits", "step_therapy_required",
                     "explanation", "data_source", mode="before")
    @classmethod
    def _null_as_default(cls, value, info):
        if value is None:
            return cls.model_fields[info.field_name].default
        return value


# --- public contract ----------------------------------------------------------

class InsurancePlan(CamelModel):
    id: str
    name: Optional[str] = None
    carrier: Optional[str] = None
    type: Optional[str] = None  # PPO / HMO / EPO / POS / HDHP


class CopayEstimate(CamelModel):
    min: float
    max: float
    currency: str = "USD"


class PriorAuthRequirement(CamelModel):
    required: bool
    reason: Optional[str] = None
    estimated_approval_time: Optional[str] = None


class AlternativeMedication(BaseModel):
    # serialized with the same snake_case keys the retrieval agent uses
    name: str
    tier: Optional[int] = None
    copay: Optional[float] = None
    prior_auth: bool = False
    reason: str = ""


class AlternativeDrug(CamelModel):
    name: str
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    cash_price: Optional[float] = None
    pharmacy: Optional[str] = None
    source: Optional[str] = None
    availability: Optional[str] = None
    savings: Optional[float] = None
    prior_auth_required: Optional[bool] = None


class PriceComparison(CamelModel):
    pharmacy: str
    price: float
    discounts: List[str] = []


class PAStrategy(CamelModel):
    strategy: str
    success_rate: Optional[str] = None
    requirements: List[str] = []


class WebResearchResult(CamelModel):
    query: str
    search_time: int  # milliseconds
    timestamp: str
    alternatives: List[AlternativeDrug] = []
    price_comparisons: List[PriceComparison] = []
    pa_strategies: List[PAStrategy] = []
    patient_programs: List[str] = []
    summary: str
    sources: List[str] = []


class CoverageResponse(CamelModel):
    medication: Medication
    insurance_plan: InsurancePlan
    is_covered: bool
    tier: Optional[int] = None
    estimated_copay: Optional[CopayEstimate] = None
    prior_auth: PriorAuthRequirement
    alternative_medications: Optional[List[AlternativeMedication]] = None
    web_research: Optional[WebResearchResult] = None
    last_updated: str
    disclaimer: str = Field(min_length=1)

    def to_wire(self) -> Dict[str, Any]:
        # tier and estimatedCopay are part of the contract even when null
        data = super().to_wire()
        data.setdefault("tier", None)
        data.setdefault("estimatedCopay", None)
        return data


class CoverageCheckRequest(BaseModel):
    medication_name: str
    insurance_plan: InsurancePlan
    patient_zip_code: str
    pharmacy_zip_code: str
    quantity: Optional[int] = None
    day_supply: Optional[int] = None
    include_web_research: bool = False
