from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    created = "created"
    waiting = "waiting"
    processing = "processing"
    terminating = "terminating"
    success = "success"
    warning = "warning"
    error = "error"
    cancelled = "cancelled"
    terminated = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.success,
        JobStatus.warning,
        JobStatus.error,
        JobStatus.cancelled,
        JobStatus.terminated,
    }
)


class DesiredStatus(str, Enum):
    processing = "processing"
    terminating = "terminating"


class ErrorType(str, Enum):
    application = "application"
    user = "user"


class Variable(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "value": self.value}


class VariableCollection:
    """Append-only, insertion-ordered sequence of job variables.

    Names are not required to be unique. Every iteration starts from the
    first item, so the collection can be walked any number of times.
    """

    def __init__(self, variables: Optional[Iterable[Variable]] = None):
        self._items: List[Variable] = []
        for variable in variables or ():
            self.add(variable)

    def add(self, variable: Variable) -> "VariableCollection":
        if not isinstance(variable, Variable):
            raise TypeError(f"Expected Variable, got {type(variable).__name__}")
        self._items.append(variable)
        return self

    def count(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Variable]:
        return iter(tuple(self._items))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VariableCollection):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"VariableCollection({self._items!r})"

    def to_list(self) -> List[Dict[str, str]]:
        """Serialize to an ordered list of {name, value} records"""
        return [variable.to_dict() for variable in self._items]

    @classmethod
    def from_list(cls, records: Iterable[Dict[str, Any]]) -> "VariableCollection":
        return cls(Variable(name=r["name"], value=r["value"]) for r in records)


class JobResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    message: Optional[str] = None
    config_version: Optional[str] = None
    images: Optional[List[Any]] = None
    error_type: Optional[ErrorType] = None
    exception_id: Optional[str] = None
    variables: VariableCollection = Field(default_factory=VariableCollection)

    def to_payload(self) -> Dict[str, Any]:
        """Build the result body in the shape the job queue API expects"""
        payload: Dict[str, Any] = {
            "message": self.message,
            "configVersion": self.config_version,
            "images": self.images,
        }
        error: Dict[str, Any] = {}
        if self.error_type is not None:
            error["type"] = self.error_type.value
        if self.exception_id is not None:
            error["exceptionId"] = self.exception_id
        if error:
            payload["error"] = error
        if len(self.variables):
            payload["output"] = {"variables": self.variables.to_list()}
        return payload


class NewJob(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    component_id: str
    config_id: Optional[str] = None
    mode: str = "run"
    deduplication_id: Optional[str] = None
    variable_values: VariableCollection = Field(default_factory=VariableCollection)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"componentId": self.component_id, "mode": self.mode}
        if self.config_id is not None:
            payload["configId"] = self.config_id
        if self.deduplication_id is not None:
            payload["deduplicationId"] = self.deduplication_id
        if len(self.variable_values):
            payload["variableValuesData"] = {
                "values": self.variable_values.to_list()
            }
        return payload


class Job(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )

    id: str
    status: JobStatus
    desired_status: Optional[DesiredStatus] = Field(None, alias="desiredStatus")
    deduplication_id: Optional[str] = Field(None, alias="deduplicationId")
    project_id: Optional[str] = Field(None, alias="projectId")
    component_id: Optional[str] = Field(None, alias="componentId")
    config_id: Optional[str] = Field(None, alias="configId")
    result: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("result", mode="before")
    @classmethod
    def _empty_result(cls, value: Any) -> Any:
        # the API encodes an empty result as [] or null
        if value is None or value == []:
            return {}
        return value

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal


class JobListOptions(BaseModel):
    ids: List[str] = Field(default_factory=list)
    components: List[str] = Field(default_factory=list)
    configs: List[str] = Field(default_factory=list)
    modes: List[str] = Field(default_factory=list)
    projects: List[str] = Field(default_factory=list)
    statuses: List[JobStatus] = Field(default_factory=list)
    offset: int = Field(0, ge=0)
    limit: int = Field(100, gt=0)

    def query_parameters(self) -> List[Tuple[str, str]]:
        """Build the query string pairs for ``GET jobs``, list filters use the ``name[]`` form"""
        parameters: List[Tuple[str, str]] = []
        for values, name in (
            (self.ids, "id"),
            (self.components, "componentId"),
            (self.configs, "configId"),
            (self.modes, "mode"),
            (self.projects, "projectId"),
            ([status.value for status in self.statuses], "status"),
        ):
            parameters.extend((f"{name}[]", value) for value in values)
        if self.offset:
            parameters.append(("offset", str(self.offset)))
        parameters.append(("limit", str(self.limit)))
        return parameters
