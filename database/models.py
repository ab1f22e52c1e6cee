import uuid
from pydantic import BaseModel, Field
from typing import Any, List, Dict, Optional
from datetime import datetime, timezone


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Product(Record):
    user_id: str
    name: str
    description: str = ""
    slug: str
    flow_version: str = Field(default_factory=_new_id)


class PRDDocument(Record):
    product_id: str
    problem: str = ""
    solution: str = ""
    target_audience: str = ""
    tech_stack: str = ""
    success_metrics: str = ""
    custom_sections: Dict[str, str] = Field(default_factory=dict)


class CustomerProfile(Record):
    product_id: str
    name: str
    overview: str = ""
    keyPoints: List[str] = Field(default_factory=list)
    topPainPoint: str = ""
    biggestFrustration: str = ""
    currentSolution: str = ""
    scores: Dict[str, int] = Field(default_factory=dict)
    is_selected: bool = False


class Feature(Record):
    product_id: str
    name: str
    description: str = ""
    priority: str = "not-prioritized"
    implementation_status: str = "not_started"
    position: int = 0


class FlowPageRecord(Record):
    product_id: str
    flow_version: str
    name: str
    description: str = ""
    layout_description: str = ""
    features: List[str] = Field(default_factory=list)
    position_x: float = 0.0
    position_y: float = 0.0
    # pages also show up on the kanban board
    implementation_status: str = "not_started"
    priority: str = "not-prioritized"


class FlowConnectionRecord(Record):
    product_id: str
    flow_version: str
    source_id: str
    target_id: str


class Bug(Record):
    product_id: str
    name: str
    description: str = ""
    bug_url: Optional[str] = None
    screenshot_url: Optional[str] = None
    status: str = "not_started"
    priority: str = "not-prioritized"
    position: int = 0


class Task(Record):
    product_id: str
    name: str
    description: str = ""
    status: str = "not_started"
    priority: str = "not-prioritized"
    position: int = 0


class Note(Record):
    product_id: str
    title: str
    content: str = ""


class PromptTemplate(Record):
    user_id: str
    name: str
    description: str = ""
    template: str
    category: str = "system"
    is_public: bool = False


class ProductPrompt(Record):
    product_id: str
    # set when the prompt was copied from a library template
    template_id: Optional[str] = None
    name: str
    description: str = ""
    prompt: str


class OpenAILog(Record):
    user_id: Optional[str] = None
    request_type: str
    model: str
    request_payload: Any = None
    response_payload: Any = None
    error: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
