from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, model_validator


class JsonRpcMessage(BaseModel):
    """A JSON-RPC 2.0 request, notification or client response."""

    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"]
    id: Optional[Union[StrictStr, StrictInt]] = None
    method: Optional[StrictStr] = None
    params: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "JsonRpcMessage":
        if self.method is not None:
            if "result" in self.model_fields_set or "error" in self.model_fields_set:
                raise ValueError("a request cannot carry result or error")
            if "id" in self.model_fields_set and self.id is None:
                raise ValueError("request id must not be null")
        elif not self.is_response:
            raise ValueError("message has neither method nor result/error")
        return self

    @property
    def is_notification(self) -> bool:
        return self.method is not None and "id" not in self.model_fields_set

    @property
    def is_response(self) -> bool:
        return self.method is None and ("result" in self.model_fields_set or "error" in self.model_fields_set)
