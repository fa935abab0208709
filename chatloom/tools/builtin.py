"""Platform-provided tools that ship with every registry."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from chatloom.tools.base import HttpMethod, NativeRoutine, ToolDeclaration
from chatloom.tools.registry import ToolRegistry

PUBLIC_IP_TOOL = ToolDeclaration(
    name="getPublicIPAddress",
    description="Fetches the public IP address of the client from an external API.",
    parameters={"type": "object", "properties": {}},
    endpoint_url="https://api.ipify.org?format=json",
    http_method=HttpMethod.GET,
    platform_provided=True,
)

CURRENT_DATETIME_TOOL = ToolDeclaration(
    name="getCurrentDateTime",
    description="Gets the current date and time on the machine running the assistant.",
    parameters={
        "type": "object",
        "properties": {
            "format": {
                "type": "string",
                "description": "Output format. Defaults to ISO.",
                "enum": ["ISO", "locale", "localeDate", "localeTime"],
            }
        },
    },
    native="current_datetime",
    platform_provided=True,
)


class CurrentDateTime(NativeRoutine):
    @property
    def identifier(self) -> str:
        return "current_datetime"

    async def execute(self, **kwargs: Any) -> dict:
        now = datetime.now(timezone.utc).astimezone()
        fmt = kwargs.get("format") or "ISO"
        if fmt == "locale":
            formatted = now.strftime("%c")
        elif fmt == "localeDate":
            formatted = now.strftime("%x")
        elif fmt == "localeTime":
            formatted = now.strftime("%X")
        else:
            formatted = now.isoformat()
        offset = now.utcoffset()
        return {
            "currentDateTime": formatted,
            "timezoneOffsetMinutes": int(offset.total_seconds() // 60) if offset else 0,
        }


def register_builtin_tools(registry: ToolRegistry) -> None:
    registry.register(PUBLIC_IP_TOOL)
    registry.register(CURRENT_DATETIME_TOOL)
    registry.register_native(CurrentDateTime())
