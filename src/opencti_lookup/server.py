"""MCP server exposing OpenCTI lookup, submission and editing.

Security:
- All inputs validated before processing
- Errors sanitized before returning to clients
- Write operations rate limited in the client
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from . import actions
from .assembler import ClientResultFetcher, LookupAssembler
from .cache import MarkingCache, MarkingRefresher
from .client import OpenCTIClient
from .config import Config
from .constants import ITEM_KINDS
from .errors import (
    ConfigurationError,
    OpenCTILookupError,
    RateLimitError,
    ValidationError,
)
from .feature_flags import get_feature_flags
from .logging import clear_request_id, get_logger, set_request_id
from .models import InputEntity, UnifiedItem
from .validation import (
    MAX_DESCRIPTION_LENGTH,
    MAX_ENTITIES,
    MAX_ENTITY_LENGTH,
    MAX_SEARCH_TERM_LENGTH,
    sanitize_for_log,
    validate_length,
)

logger = get_logger(__name__)


_ENTITY_SCHEMA = {
    "type": "object",
    "properties": {
        "value": {"type": "string", "maxLength": MAX_ENTITY_LENGTH},
        "type": {"type": "string"},
        "types": {"type": "array", "items": {"type": "string"}},
        "isIP": {"type": "boolean"},
    },
    "required": ["value"],
}

_ITEM_SCHEMA = {
    "type": "object",
    "description": "A unified item as returned by lookup_entities",
    "properties": {
        "id": {"type": ["string", "null"]},
        "type": {"type": ["string", "null"], "enum": [*ITEM_KINDS, None]},
        "entityValue": {"type": "string"},
        "entityType": {"type": "string"},
        "__submitAsIndicator": {"type": "boolean"},
        "__submitAsObservable": {"type": "boolean"},
    },
    "required": ["entityValue", "entityType"],
}

_SUBMISSION_FIELDS = {
    "description": {"type": "string", "maxLength": MAX_DESCRIPTION_LENGTH},
    "score": {"type": "integer", "minimum": 0, "maximum": 100},
    "author_id": {"type": "string", "description": "Identity id (see search_identities)"},
    "markings": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Marking definition ids (see get_markings)",
    },
}


class OpenCTILookupServer:
    """MCP server for OpenCTI indicator/observable lookup."""

    def __init__(
        self,
        config: Config,
        client: OpenCTIClient | None = None,
        marking_cache: MarkingCache | None = None,
    ) -> None:
        self.config = config
        self.client = client or OpenCTIClient(config)
        self.marking_cache = marking_cache or MarkingCache()
        self.assembler = LookupAssembler(
            config, ClientResultFetcher(self.client), self.marking_cache
        )
        self.marking_refresher = MarkingRefresher(self.marking_cache, self._load_markings)
        self.server = Server("opencti-lookup")
        self._register_tools()

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            return [
                Tool(
                    name="get_health",
                    description="Check OpenCTI server health and connectivity.",
                    inputSchema={"type": "object", "properties": {}},
                ),
                Tool(
                    name="lookup_entities",
                    description=(
                        "Look up IPs, domains, hashes, emails, MAC addresses and URLs in "
                        "OpenCTI. Returns one de-duplicated list of matching indicators and "
                        "observables plus a placeholder for every entity not found."
                    ),
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "entities": {
                                "type": "array",
                                "items": _ENTITY_SCHEMA,
                                "maxItems": MAX_ENTITIES,
                            }
                        },
                        "required": ["entities"],
                    },
                ),
                Tool(
                    name="submit_items",
                    description=(
                        "Create indicators and/or observables for items flagged with "
                        "__submitAsIndicator / __submitAsObservable."
                    ),
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "items": {"type": "array", "items": _ITEM_SCHEMA},
                            "labels": {"type": "array", "items": {"type": "string"}},
                            **_SUBMISSION_FIELDS,
                        },
                        "required": ["items"],
                    },
                ),
                Tool(
                    name="edit_item",
                    description=(
                        "Edit score, description, author or markings of an indicator or "
                        "observable. Omitted fields are left unchanged."
                    ),
                    inputSchema={
                        "type": "object",
                        "properties": {"item": _ITEM_SCHEMA, **_SUBMISSION_FIELDS},
                        "required": ["item"],
                    },
                ),
                Tool(
                    name="delete_item",
                    description="Delete an indicator or observable (if enabled).",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "type": {"type": "string", "enum": list(ITEM_KINDS)},
                        },
                        "required": ["id", "type"],
                    },
                ),
                Tool(
                    name="search_labels",
                    description="Search OpenCTI labels for tagging submissions.",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "term": {"type": "string", "maxLength": MAX_SEARCH_TERM_LENGTH},
                            "selected_ids": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["term"],
                    },
                ),
                Tool(
                    name="search_identities",
                    description="Search individuals, organizations and systems to use as author.",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "term": {"type": "string", "maxLength": MAX_SEARCH_TERM_LENGTH},
                        },
                        "required": ["term"],
                    },
                ),
                Tool(
                    name="get_markings",
                    description="List marking definitions the current user can apply.",
                    inputSchema={"type": "object", "properties": {}},
                ),
            ]

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict) -> list[TextContent]:
            return await self.handle_call(name, arguments)

    async def handle_call(self, name: str, arguments: dict | None) -> list[TextContent]:
        """Run one tool call and render the JSON response."""
        arguments = arguments or {}
        request_id = set_request_id()
        start = time.monotonic()
        try:
            result = await self._dispatch_tool(name, arguments)
            logger.info(
                "Tool completed",
                extra={
                    "tool": name,
                    "request_id": request_id,
                    "elapsed_ms": round((time.monotonic() - start) * 1000, 1),
                },
            )
            return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

        except ValidationError as e:
            logger.warning(
                "Validation failed",
                extra={
                    "tool": name,
                    "error": str(e),
                    "arguments": sanitize_for_log(arguments),
                },
            )
            return self._error_response("validation_error", str(e))

        except RateLimitError as e:
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "tool": name,
                    "wait_seconds": e.wait_seconds,
                    "limit_type": e.limit_type,
                },
            )
            return self._error_response(
                "rate_limit_exceeded", e.safe_message, wait_seconds=e.wait_seconds
            )

        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return self._error_response(
                "configuration_error",
                "OpenCTI is not properly configured. Check server settings.",
            )

        except OpenCTILookupError as e:
            logger.error(
                "Tool failed",
                extra={"tool": name, "error_type": type(e).__name__, "error": str(e)},
            )
            return self._error_response(type(e).__name__.lower(), e.safe_message)

        except Exception as e:
            logger.exception(
                "Internal error",
                extra={"tool": name, "error_type": type(e).__name__},
            )
            return self._error_response(
                "internal_error", "An unexpected error occurred. Check server logs."
            )

        finally:
            clear_request_id()

    @staticmethod
    def _error_response(
        error_code: str, message: str, **extra_fields: Any
    ) -> list[TextContent]:
        response: dict[str, Any] = {"error": error_code, "message": message}
        response.update(extra_fields)
        return [TextContent(type="text", text=json.dumps(response))]

    @staticmethod
    def _parse_entities(raw: Any) -> list[InputEntity]:
        if not isinstance(raw, list):
            raise ValidationError("entities must be a list")
        if len(raw) > MAX_ENTITIES:
            raise ValidationError(f"Cannot look up more than {MAX_ENTITIES} entities at once")
        entities = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValidationError("Each entity must be an object")
            validate_length(entry.get("value"), MAX_ENTITY_LENGTH, "entity value")
            entities.append(InputEntity.from_dict(entry))
        return entities

    @staticmethod
    def _parse_item(raw: Any) -> UnifiedItem:
        if not isinstance(raw, dict):
            raise ValidationError("item must be an object")
        validate_length(raw.get("entityValue"), MAX_ENTITY_LENGTH, "entityValue")
        try:
            return UnifiedItem.from_dict(raw)
        except TypeError as e:
            raise ValidationError(f"Malformed item: {e}") from e

    async def _load_markings(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.client.get_markings)

    async def _markings(self) -> list[dict[str, Any]]:
        cached = self.marking_cache.get()
        if cached is not None:
            return cached
        markings = await self._load_markings()
        self.marking_cache.put(markings)
        return markings

    async def _dispatch_tool(self, name: str, arguments: dict) -> Any:
        """Dispatch tool call to appropriate handler."""

        if name == "get_health":
            available = await asyncio.to_thread(self.client.is_available)
            return {
                "status": "healthy" if available else "unavailable",
                "opencti_available": available,
                "circuit_state": self.client.circuit_state.value,
                "marking_cache": self.marking_cache.get_stats(),
            }

        elif name == "lookup_entities":
            entities = self._parse_entities(arguments.get("entities"))
            return await self.assembler.assemble(entities)

        elif name == "submit_items":
            raw_items = arguments.get("items")
            if not isinstance(raw_items, list):
                raise ValidationError("items must be a list")
            items = [self._parse_item(raw) for raw in raw_items]
            created = await actions.submit_items(
                self.client,
                self.config,
                items,
                description=arguments.get("description"),
                score=arguments.get("score"),
                labels=arguments.get("labels"),
                markings=arguments.get("markings"),
                author_id=arguments.get("author_id"),
            )
            return {"createdItems": [item.to_dict() for item in created]}

        elif name == "edit_item":
            item = self._parse_item(arguments.get("item"))
            updated = await actions.edit_item(
                self.client,
                self.config,
                item,
                score=arguments.get("score"),
                description=arguments.get("description"),
                author_id=arguments.get("author_id"),
                markings=arguments.get("markings"),
            )
            return {"updatedItem": updated.to_dict()}

        elif name == "delete_item":
            return await actions.delete_item(
                self.client, self.config, arguments.get("type"), arguments.get("id")
            )

        elif name == "search_labels":
            term = arguments.get("term", "")
            validate_length(term, MAX_SEARCH_TERM_LENGTH, "term")
            labels = await actions.search_labels(
                self.client, term, arguments.get("selected_ids") or ()
            )
            return {"labels": labels, "searchTerm": term}

        elif name == "search_identities":
            term = arguments.get("term", "")
            validate_length(term, MAX_SEARCH_TERM_LENGTH, "term")
            identities = await actions.search_identities(self.client, term)
            return {"identities": identities, "searchTerm": term}

        elif name == "get_markings":
            return {"markings": await self._markings()}

        else:
            raise ValidationError(f"Unknown tool: {name}")

    async def run(self) -> None:
        """Run the MCP server over stdio."""
        from mcp.server.stdio import stdio_server

        if get_feature_flags().marking_refresh:
            self.marking_refresher.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream, write_stream, self.server.create_initialization_options()
                )
        finally:
            await self.marking_refresher.stop()
