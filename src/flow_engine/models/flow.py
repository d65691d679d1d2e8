"""
Flow definition models.

A flow is the graph authored in the visual builder: typed nodes joined by
optionally labelled edges. The builder speaks camelCase JSON, so every model
accepts and dumps aliases.
"""

from typing import Optional, List, Dict, Any, Type
from enum import Enum
from datetime import datetime
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    field_validator,
    model_validator,
)


class NodeType(str, Enum):
    """Node types understood by the engine."""
    START = "start"
    END = "end"
    MESSAGE = "message"
    TEMPLATE = "template"
    CONDITION = "condition"
    INPUT = "input"
    BUTTON = "button"
    DELAY = "delay"
    API = "api"
    WEBHOOK = "webhook"
    JUMP = "jump"
    ASSIGNMENT = "assignment"
    TAG = "tag"
    CUSTOM_FIELD = "customField"


class FlowStatus(str, Enum):
    """Flow definition status."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class Logic(str, Enum):
    AND = "AND"
    OR = "OR"


class Operator(str, Enum):
    """Comparison operators available to condition rules."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"

    @property
    def needs_value(self) -> bool:
        return self not in (Operator.IS_EMPTY, Operator.IS_NOT_EMPTY)


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    @property
    def seconds(self) -> int:
        return {
            DelayUnit.SECONDS: 1,
            DelayUnit.MINUTES: 60,
            DelayUnit.HOURS: 3600,
            DelayUnit.DAYS: 86400,
        }[self]


class InputType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    ANY = "any"


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    WELCOME = "welcome"
    MANUAL = "manual"
    WEBHOOK = "webhook"


# Node configuration variants

class NodeConfig(BaseModel):
    """Base for per-type node configuration. Unknown builder keys are kept."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    label: Optional[str] = None


class StartConfig(NodeConfig):
    pass


class EndConfig(NodeConfig):
    pass


class MessageConfig(NodeConfig):
    message: str = Field(default="", description="Message text, may contain {{placeholders}}")


class TemplateConfig(NodeConfig):
    template_name: str = Field(..., alias="templateName")
    language: str = Field(default="en_US")
    sample_values: Dict[str, str] = Field(default_factory=dict, alias="sampleValues")


class Rule(BaseModel):
    """A single typed comparison inside a condition node."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    variable: str = Field(..., description="Variable name, dotted name or {{placeholder}}")
    operator: Operator = Operator.EQUALS
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class ConditionConfig(NodeConfig):
    logic: Logic = Logic.AND
    rules: List[Rule] = Field(default_factory=list)


class InputValidation(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    required: bool = True
    min_length: Optional[int] = Field(default=None, alias="minLength", ge=0)
    max_length: Optional[int] = Field(default=None, alias="maxLength", ge=0)
    pattern: Optional[str] = None


class InputConfig(NodeConfig):
    prompt: Optional[str] = None
    variable_name: str = Field(..., alias="variableName")
    input_type: InputType = Field(default=InputType.ANY, alias="inputType")
    validation: InputValidation = Field(default_factory=InputValidation)
    error_message: str = Field(default="Invalid input. Please try again.", alias="errorMessage")
    max_attempts: Optional[int] = Field(default=None, alias="maxAttempts", ge=1)


class ButtonConfig(NodeConfig):
    message: str = ""
    buttons: List[str] = Field(default_factory=list)
    variable_name: Optional[str] = Field(default=None, alias="variableName")
    error_message: str = Field(default="Please choose one of the options.", alias="errorMessage")
    max_attempts: Optional[int] = Field(default=None, alias="maxAttempts", ge=1)


class DelayConfig(NodeConfig):
    duration: float = Field(..., gt=0)
    unit: DelayUnit = DelayUnit.SECONDS

    @property
    def total_seconds(self) -> float:
        return self.duration * self.unit.seconds


class ApiConfig(NodeConfig):
    method: str = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    response_variable: Optional[str] = Field(default=None, alias="responseVariable")
    timeout: Optional[int] = Field(
        default=None,
        ge=1000,
        le=300000,
        description="Hard deadline for the call in milliseconds",
    )

    @field_validator("method")
    @classmethod
    def _upper_method(cls, v: str) -> str:
        return v.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def _headers_from_pairs(cls, v: Any) -> Any:
        # The builder edits headers as a list of {key, value} rows
        if isinstance(v, list):
            return {
                row["key"]: str(row.get("value", ""))
                for row in v
                if isinstance(row, dict) and row.get("key")
            }
        return v or {}


class WebhookConfig(ApiConfig):
    method: str = "POST"
    url: str = Field(..., validation_alias=AliasChoices("url", "webhookUrl"))


class JumpConfig(NodeConfig):
    target_node_id: str = Field(..., alias="targetNodeId")


class AssignmentConfig(NodeConfig):
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    team_id: Optional[str] = Field(default=None, alias="teamId")


class TagConfig(NodeConfig):
    action: str = Field(default="add", pattern="^(add|remove)$")
    tags: List[str] = Field(default_factory=list)


class CustomFieldConfig(NodeConfig):
    fields: Dict[str, Any] = Field(default_factory=dict)


NODE_CONFIG_TYPES: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.START: StartConfig,
    NodeType.END: EndConfig,
    NodeType.MESSAGE: MessageConfig,
    NodeType.TEMPLATE: TemplateConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.INPUT: InputConfig,
    NodeType.BUTTON: ButtonConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.API: ApiConfig,
    NodeType.WEBHOOK: WebhookConfig,
    NodeType.JUMP: JumpConfig,
    NodeType.ASSIGNMENT: AssignmentConfig,
    NodeType.TAG: TagConfig,
    NodeType.CUSTOM_FIELD: CustomFieldConfig,
}


class Node(BaseModel):
    """A typed step in the flow. `config` is parsed into the model for `type`."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., description="Node id, unique within the flow")
    type: NodeType
    config: SerializeAsAny[NodeConfig] = Field(
        default_factory=NodeConfig,
        validation_alias=AliasChoices("config", "data"),
    )

    @model_validator(mode="before")
    @classmethod
    def _parse_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw = data.pop("data", None) if "config" not in data else data.get("config")
        try:
            node_type = NodeType(data.get("type"))
        except ValueError:
            return data  # enum validation reports the bad type
        if isinstance(raw, NodeConfig):
            data["config"] = raw
        else:
            data["config"] = NODE_CONFIG_TYPES[node_type].model_validate(raw or {})
        return data

    @property
    def label(self) -> str:
        return self.config.label or self.type.value


class Edge(BaseModel):
    """A directed, optionally branch-labelled connection."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")


class TriggerConfig(BaseModel):
    """How inbound events select this flow."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: TriggerType = TriggerType.MANUAL
    keywords: List[str] = Field(default_factory=list)
    conditions: Dict[str, Any] = Field(default_factory=dict)


class FlowDefinition(BaseModel):
    """Complete, immutable-per-version flow graph."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    version: int = Field(default=1, ge=1)
    name: Optional[str] = None
    description: Optional[str] = None
    status: FlowStatus = FlowStatus.DRAFT
    trigger: Optional[TriggerConfig] = None
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def export(self) -> Dict[str, Any]:
        """Dump to the builder's JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)
