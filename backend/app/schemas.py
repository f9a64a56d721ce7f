"""
Pydantic-Modelle fuer API Requests und Responses.
Zentral gesammelt damit Router und Services sie importieren koennen.
"""
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field

OperationName = Literal["read", "create", "update", "delete"]
PrincipalType = Literal["everyone", "role", "team", "group", "user"]


# --- Zugriffsprüfung ---
class AccessCheckReq(BaseModel):
    collection_id: str
    operation: OperationName
    record: Optional[dict[str, Any]] = None   # ohne Datensatz: Condition geht an den Row-Filter
    include_trace: bool = False


class AccessCheckResp(BaseModel):
    allowed: bool
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None
    condition: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    trace: Optional[list[dict[str, Any]]] = None


class MaskReq(BaseModel):
    """Datensatz, Liste oder Paginierungs-Wrapper ({"items": [...], ...})."""
    payload: Any


# --- Regel-Administration ---
class CollectionRuleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    principal_type: PrincipalType = "everyone"
    principal_id: Optional[str] = None
    can_read: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False
    condition: Optional[dict[str, Any]] = None
    priority: int = 100
    is_active: bool = True
    rule_key: Optional[str] = None


class CollectionRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    principal_type: Optional[PrincipalType] = None
    principal_id: Optional[str] = None
    can_read: Optional[bool] = None
    can_create: Optional[bool] = None
    can_update: Optional[bool] = None
    can_delete: Optional[bool] = None
    condition: Optional[dict[str, Any]] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class RuleOrderItem(BaseModel):
    rule_id: str
    priority: int


class RuleReorderReq(BaseModel):
    rules: list[RuleOrderItem] = Field(default_factory=list)


class PropertyRuleCreate(BaseModel):
    principal_type: PrincipalType = "everyone"
    principal_id: Optional[str] = None
    can_read: bool = True
    can_write: bool = True
    condition: Optional[dict[str, Any]] = None
    mask_value: Optional[str] = None
    priority: int = 100
    is_active: bool = True
    rule_key: Optional[str] = None


class PropertyRuleUpdate(BaseModel):
    principal_type: Optional[PrincipalType] = None
    principal_id: Optional[str] = None
    can_read: Optional[bool] = None
    can_write: Optional[bool] = None
    condition: Optional[dict[str, Any]] = None
    mask_value: Optional[str] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class AccessAssetReq(BaseModel):
    """Asset als YAML-Text (`yaml`) oder bereits strukturiert (`asset`)."""
    yaml: Optional[str] = None
    asset: Optional[dict[str, Any]] = None
    deactivate: bool = False


# --- Break-Glass ---
class BreakGlassRequestReq(BaseModel):
    reason_code: str
    justification: str
    collection_id: Optional[str] = None
    record_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    external_reference: Optional[str] = None


class BreakGlassApproveReq(BaseModel):
    comment: Optional[str] = None


class BreakGlassRevokeReq(BaseModel):
    reason: Optional[str] = None


class BreakGlassActionReq(BaseModel):
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
