"""Shared type aliases."""

from __future__ import annotations

from typing import Any, TypeAlias, TypedDict

JSONValue: TypeAlias = (
    str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
)
JSONObject: TypeAlias = dict[str, Any]


class WatchEvent(TypedDict):
    """A single event from a Kubernetes watch stream."""

    type: str
    object: JSONObject
