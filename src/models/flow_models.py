# src/models/flow_models.py

from datetime import datetime, timezone
from enum import Enum
from typing import List
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatPhase(str, Enum):
    GREETING = "greeting"
    AWAITING_USER_INPUT = "awaiting_user_input"
    WAITING_FOR_REPLY = "waiting_for_reply"


class AnalysisPhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Urgency(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class NodeKind(str, Enum):
    SYMPTOM = "symptom"
    CONDITION = "condition"
    GENERIC = "generic"


# Sentinel diagnosis used whenever no usable analysis could be produced
INSUFFICIENT_DATA_NAME = "信息不足"
INSUFFICIENT_DATA_DESCRIPTION = "目前的对话信息不足，无法给出可靠的分析结果。"
INSUFFICIENT_DATA_ACTION = "请补充描述您的症状后重新分析；如症状严重，请立即就医。"


class Turn(BaseModel):
    """One entry of the chat transcript"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    role: Role
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    options: List[str] = Field(default_factory=list)
    allow_multiple: bool = Field(default=False, alias="allowMultiple")

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value):
        # Clients of the original UI tag assistant turns as "model"
        if isinstance(value, str) and value.lower() == "model":
            return Role.ASSISTANT
        return value

    @field_validator("options", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []

    @field_validator("allow_multiple", mode="before")
    @classmethod
    def _none_to_false(cls, value):
        return bool(value)


class InterviewReply(BaseModel):
    """Decoded interview turn from the model"""
    model_config = ConfigDict(populate_by_name=True)

    question: str
    options: List[str] = Field(default_factory=list)
    allow_multiple: bool = Field(default=False, alias="allowMultiple")


class Diagnosis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    probability: int = Field(ge=0, le=100)
    description: str = ""
    urgency: Urgency = Urgency.MEDIUM
    recommended_action: str = Field(default="", alias="recommendedAction")


class SymptomLink(BaseModel):
    symptom: str
    condition: str
    strength: int = Field(ge=1, le=10)


class AnalysisResult(BaseModel):
    """Differential diagnosis plus symptom-to-condition links"""
    model_config = ConfigDict(populate_by_name=True)

    diagnoses: List[Diagnosis] = Field(default_factory=list)
    symptom_links: List[SymptomLink] = Field(default_factory=list, alias="symptomConnections")

    @classmethod
    def placeholder(cls) -> "AnalysisResult":
        """Single low-confidence 'insufficient data' diagnosis, no links"""
        return cls(
            diagnoses=[
                Diagnosis(
                    name=INSUFFICIENT_DATA_NAME,
                    probability=0,
                    description=INSUFFICIENT_DATA_DESCRIPTION,
                    urgency=Urgency.LOW,
                    recommended_action=INSUFFICIENT_DATA_ACTION,
                )
            ],
            symptom_links=[],
        )

    @property
    def is_placeholder(self) -> bool:
        return (
            len(self.diagnoses) == 1
            and self.diagnoses[0].name == INSUFFICIENT_DATA_NAME
            and not self.symptom_links
        )


class GraphNode(BaseModel):
    name: str
    kind: NodeKind


class GraphLink(BaseModel):
    source: int
    target: int
    value: int


class SymptomGraph(BaseModel):
    """Index-linked node/link lists for a flow diagram"""
    nodes: List[GraphNode] = Field(default_factory=list)
    links: List[GraphLink] = Field(default_factory=list)
