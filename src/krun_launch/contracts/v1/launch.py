from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

# Terminates a request on the wire; the payload carries no length prefix.
END_OF_MESSAGE = b"\nEOM\n"
OK_REPLY = "OK"


class LaunchRequest(BaseModel):
    """Ask the leader to run ``command`` inside the microVM."""

    command: str
    command_args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    def to_wire(self) -> bytes:
        return self.model_dump_json().encode("utf-8") + END_OF_MESSAGE
