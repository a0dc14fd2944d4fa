"""Job invocation model and its stored form."""

import importlib
import json
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, ValidationError

from jobstore.errors import ArgumentError, JobLoadError


class Job:
    """A callable plus the positional arguments to call it with."""

    def __init__(self, func: Callable, args: Sequence[Any] = ()):
        if func is None:
            raise ArgumentError("func")
        self.func = func
        self.args = tuple(args)

    @property
    def type_name(self) -> str:
        return self.func.__module__

    @property
    def method_name(self) -> str:
        return self.func.__qualname__

    def perform(self) -> Any:
        return self.func(*self.args)

    def __eq__(self, other):
        if not isinstance(other, Job):
            return NotImplemented
        return self.func == other.func and self.args == other.args

    def __repr__(self):
        return f"Job({self.type_name}.{self.method_name}, args={self.args!r})"


class InvocationData(BaseModel):
    """Serialized form of a Job: import path plus JSON-encoded arguments."""

    type: str
    method: str
    arguments: Optional[str] = None

    @classmethod
    def serialize(cls, job: Job) -> "InvocationData":
        if "<locals>" in job.method_name:
            raise ArgumentError("job", f"Cannot serialize a local function: {job.method_name}")
        try:
            arguments = json.dumps(list(job.args))
        except (TypeError, ValueError) as e:
            raise ArgumentError("job", f"Job arguments must be JSON serializable: {e}")
        return cls(type=job.type_name, method=job.method_name, arguments=arguments)

    @classmethod
    def from_json(cls, payload: str) -> "InvocationData":
        """Parse the stored JSON form; malformed payloads raise JobLoadError."""
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise JobLoadError("Could not parse invocation data", e)

    def to_json(self) -> str:
        """Stored form without the arguments, which live in their own column."""
        return self.model_dump_json(exclude={"arguments"})

    def deserialize(self) -> Job:
        """Resolve the callable and decode the arguments."""
        try:
            target = importlib.import_module(self.type)
            for attr in self.method.split("."):
                target = getattr(target, attr)
        except Exception as e:
            raise JobLoadError(f"Could not load {self.type}.{self.method}", e)

        if not callable(target):
            raise JobLoadError(f"{self.type}.{self.method} is not callable")

        try:
            args = json.loads(self.arguments) if self.arguments else []
        except ValueError as e:
            raise JobLoadError("Could not decode job arguments", e)
        if not isinstance(args, list):
            raise JobLoadError("Job arguments must be a JSON array")

        return Job(target, args)
