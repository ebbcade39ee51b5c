#!/usr/bin/env python3
"""
CIGAM MCP Server
Exposes the CIGAM ERP integration API (materials, stock, purchasing,
invoicing, accounts) as MCP tools over stdio.

Setup:
  1. pip install -e .
  2. Get the integration PIN from your CIGAM administrator
  3. Set CIGAM_BASE_URL and CIGAM_PIN env vars (or put them in a .env file)
  4. Add to claude_desktop_config.json:
       {"command": "cigam-mcp", "env": {"CIGAM_BASE_URL": "...", "CIGAM_PIN": "..."}}
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

import mcp.types as types
from dotenv import load_dotenv
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from cigam_client import (
    DEFAULT_LIMIT,
    REQUEST_TIMEOUT,
    CigamClient,
    CigamConfigurationError,
    RequisitionItem,
)

logger = logging.getLogger(__name__)

# ─── Configuration ───────────────────────────────────────────────────────────

SERVER_NAME = "cigam-mcp"
SERVER_VERSION = "1.0.0"
DEFAULT_LOG_LEVEL = "INFO"
NOISY_LOGGERS = ("httpx", "httpcore")


@dataclass(frozen=True)
class Settings:
    base_url: str
    pin: str
    timeout: float = REQUEST_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read CIGAM_* settings from the environment."""
    env = os.environ if environ is None else environ
    base_url = env.get("CIGAM_BASE_URL", "").strip()
    pin = env.get("CIGAM_PIN", "").strip()
    if not base_url or not pin:
        raise CigamConfigurationError(
            "CIGAM_BASE_URL and CIGAM_PIN environment variables are required"
        )

    timeout = env.get("CIGAM_TIMEOUT", "").strip()
    try:
        timeout_seconds = float(timeout) if timeout else REQUEST_TIMEOUT
    except ValueError:
        raise CigamConfigurationError(f"CIGAM_TIMEOUT must be a number, got {timeout!r}")
    if timeout_seconds <= 0:
        raise CigamConfigurationError(f"CIGAM_TIMEOUT must be positive, got {timeout!r}")

    log_level = env.get("CIGAM_LOG_LEVEL", "").strip().upper() or DEFAULT_LOG_LEVEL
    if log_level not in logging.getLevelNamesMapping():
        raise CigamConfigurationError(f"CIGAM_LOG_LEVEL is not a logging level: {log_level!r}")

    return Settings(base_url=base_url, pin=pin, timeout=timeout_seconds, log_level=log_level)


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    # stdout carries the MCP stream, so logs go to stderr.
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    # httpx logs full request URLs at INFO, and the URL carries the PIN
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ─── Service Catalog ─────────────────────────────────────────────────────────

SERVICE_CATALOG: List[Dict[str, Any]] = [
    {"domain": "Compras", "services": ["Material Requisition", "Purchase Orders"]},
    {"domain": "Estoque", "services": ["Material Registration", "Stock Movements"]},
    {"domain": "Faturamento", "services": ["Invoice Registration", "Order Registration"]},
    {"domain": "Financeiro", "services": ["Account Registration", "Contracts"]},
    {"domain": "Fiscal", "services": ["Tax Documents", "Fiscal Notes"]},
]

# ─── Input Models ────────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )


class _Filters(_CamelModel):
    """Open filter bag: declared fields are documented, extra keys pass through."""
    model_config = ConfigDict(extra="allow")

    def to_filters(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class MaterialFilters(_Filters):
    """Filters for listing materials."""

    code: Optional[str] = Field(default=None, description="Material code")
    description: Optional[str] = Field(default=None, description="Material description")
    modified_after: Optional[str] = Field(
        default=None, description="ISO date string for modified after filter"
    )


class PurchaseOrderFilters(_Filters):
    """Filters for listing purchase orders."""

    order_number: Optional[str] = Field(default=None, description="Purchase order number")
    supplier: Optional[str] = Field(default=None, description="Supplier code or name")
    status: Optional[str] = Field(default=None, description="Order status")
    date_from: Optional[str] = Field(default=None, description="ISO date string for date from filter")
    date_to: Optional[str] = Field(default=None, description="ISO date string for date to filter")


class InvoiceFilters(_Filters):
    """Filters for listing invoices."""

    invoice_number: Optional[str] = Field(default=None, description="Invoice number")
    customer: Optional[str] = Field(default=None, description="Customer code or name")
    status: Optional[str] = Field(default=None, description="Invoice status")
    date_from: Optional[str] = Field(default=None, description="ISO date string for date from filter")
    date_to: Optional[str] = Field(default=None, description="ISO date string for date to filter")


class AccountFilters(_Filters):
    """Filters for listing customer/supplier accounts."""

    account_code: Optional[str] = Field(default=None, description="Account code")
    name: Optional[str] = Field(default=None, description="Account name")
    tax_id: Optional[str] = Field(default=None, description="Tax ID (CNPJ/CPF)")
    type: Optional[str] = Field(default=None, description="Account type (customer, supplier, both)")


class ListServicesInput(_CamelModel):
    """Input for listing CIGAM integration services (no arguments)."""


class _ListInput(_CamelModel):
    filters: _Filters = Field(default_factory=_Filters, description="Optional filters for the query")
    limit: int = Field(default=DEFAULT_LIMIT, description="Maximum number of records to return", ge=1)

    @field_validator("filters", mode="before")
    @classmethod
    def _empty_filters(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("limit", mode="before")
    @classmethod
    def _default_limit(cls, v: Any) -> Any:
        return DEFAULT_LIMIT if v in (None, 0, "") else v


class GetMaterialsInput(_ListInput):
    """Input for listing materials/products."""

    filters: MaterialFilters = Field(
        default_factory=MaterialFilters, description="Optional filters for the query"
    )


class GetStockInput(_CamelModel):
    """Input for retrieving stock of a single material."""

    material_code: str = Field(..., description="Material code to get stock for", min_length=1)
    warehouse: Optional[str] = Field(default=None, description="Optional warehouse code")


class GetPurchaseOrdersInput(_ListInput):
    """Input for listing purchase orders."""

    filters: PurchaseOrderFilters = Field(
        default_factory=PurchaseOrderFilters, description="Optional filters for the query"
    )


class GetInvoicesInput(_ListInput):
    """Input for listing invoices."""

    filters: InvoiceFilters = Field(
        default_factory=InvoiceFilters, description="Optional filters for the query"
    )


class CreateRequisitionInput(_CamelModel):
    """Input for creating a purchase requisition."""

    items: List[RequisitionItem] = Field(
        ..., description="List of items to requisition", min_length=1
    )
    requestor: str = Field(..., description="Requestor name or code", min_length=1)
    priority: Optional[str] = Field(default=None, description="Priority level (low, medium, high)")


class GetAccountsInput(_ListInput):
    """Input for listing customer accounts."""

    filters: AccountFilters = Field(
        default_factory=AccountFilters, description="Optional filters for the query"
    )


class CustomQueryInput(_CamelModel):
    """Input for calling an arbitrary CIGAM endpoint."""

    service: str = Field(..., description="Service name/endpoint", min_length=1)
    method: str = Field(default="GET", description="HTTP method (GET, POST, PUT, DELETE)")
    params: Dict[str, Any] = Field(
        default_factory=dict, description="Query parameters or request body"
    )

    @field_validator("method", mode="before")
    @classmethod
    def _default_method(cls, v: Any) -> Any:
        return "GET" if v is None or v == "" else v

    @field_validator("params", mode="before")
    @classmethod
    def _empty_params(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("method")
    @classmethod
    def _check_method(cls, v: str) -> str:
        method = v.upper()
        if method not in ("GET", "POST", "PUT", "DELETE"):
            raise ValueError(f"unsupported HTTP method '{v}'")
        return method


# ─── Tool Handlers ───────────────────────────────────────────────────────────


async def _list_services(client: CigamClient, params: ListServicesInput) -> Any:
    return SERVICE_CATALOG


async def _get_materials(client: CigamClient, params: GetMaterialsInput) -> Any:
    return await client.get_materials(params.filters.to_filters(), params.limit)


async def _get_stock(client: CigamClient, params: GetStockInput) -> Any:
    return await client.get_stock(params.material_code, params.warehouse)


async def _get_purchase_orders(client: CigamClient, params: GetPurchaseOrdersInput) -> Any:
    return await client.get_purchase_orders(params.filters.to_filters(), params.limit)


async def _get_invoices(client: CigamClient, params: GetInvoicesInput) -> Any:
    return await client.get_invoices(params.filters.to_filters(), params.limit)


async def _create_requisition(client: CigamClient, params: CreateRequisitionInput) -> Any:
    return await client.create_requisition(params.items, params.requestor, params.priority)


async def _get_accounts(client: CigamClient, params: GetAccountsInput) -> Any:
    return await client.get_accounts(params.filters.to_filters(), params.limit)


async def _custom_query(client: CigamClient, params: CustomQueryInput) -> Any:
    return await client.custom_query(params.service, params.method, params.params)


# ─── Tool Catalog ────────────────────────────────────────────────────────────

_READ_ONLY = {
    "readOnlyHint": True,
    "destructiveHint": False,
    "idempotentHint": True,
    "openWorldHint": True,
}


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    title: str
    description: str
    input_model: Type[BaseModel]
    result_key: str
    handler: Callable[[CigamClient, Any], Awaitable[Any]]
    annotations: Dict[str, bool]

    def to_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(by_alias=True),
            annotations=types.ToolAnnotations(title=self.title, **self.annotations),
        )


TOOLS: List[ToolDefinition] = [
    ToolDefinition(
        name="cigam_list_services",
        title="List CIGAM Services",
        description="List all available CIGAM integration services",
        input_model=ListServicesInput,
        result_key="services",
        handler=_list_services,
        annotations={**_READ_ONLY, "openWorldHint": False},
    ),
    ToolDefinition(
        name="cigam_get_materials",
        title="Get CIGAM Materials",
        description="Get materials/products from CIGAM ERP",
        input_model=GetMaterialsInput,
        result_key="materials",
        handler=_get_materials,
        annotations=_READ_ONLY,
    ),
    ToolDefinition(
        name="cigam_get_stock",
        title="Get CIGAM Stock",
        description="Get stock information from CIGAM ERP",
        input_model=GetStockInput,
        result_key="stock",
        handler=_get_stock,
        annotations=_READ_ONLY,
    ),
    ToolDefinition(
        name="cigam_get_purchase_orders",
        title="Get CIGAM Purchase Orders",
        description="Get purchase orders from CIGAM ERP",
        input_model=GetPurchaseOrdersInput,
        result_key="orders",
        handler=_get_purchase_orders,
        annotations=_READ_ONLY,
    ),
    ToolDefinition(
        name="cigam_get_invoices",
        title="Get CIGAM Invoices",
        description="Get invoices from CIGAM ERP",
        input_model=GetInvoicesInput,
        result_key="invoices",
        handler=_get_invoices,
        annotations=_READ_ONLY,
    ),
    ToolDefinition(
        name="cigam_create_requisition",
        title="Create CIGAM Purchase Requisition",
        description="Create a purchase requisition in CIGAM ERP",
        input_model=CreateRequisitionInput,
        result_key="requisition",
        handler=_create_requisition,
        annotations={
            "readOnlyHint": False,
            "destructiveHint": False,
            "idempotentHint": False,
            "openWorldHint": True,
        },
    ),
    ToolDefinition(
        name="cigam_get_accounts",
        title="Get CIGAM Accounts",
        description="Get customer accounts from CIGAM ERP",
        input_model=GetAccountsInput,
        result_key="accounts",
        handler=_get_accounts,
        annotations=_READ_ONLY,
    ),
    ToolDefinition(
        name="cigam_custom_query",
        title="CIGAM Custom Query",
        description="Execute a custom query to CIGAM API",
        input_model=CustomQueryInput,
        result_key="result",
        handler=_custom_query,
        annotations={
            "readOnlyHint": False,
            "destructiveHint": True,
            "idempotentHint": False,
            "openWorldHint": True,
        },
    ),
]

TOOLS_BY_NAME: Dict[str, ToolDefinition] = {tool.name: tool for tool in TOOLS}

# ─── Dispatcher ──────────────────────────────────────────────────────────────


def _text_result(payload: Dict[str, Any], is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text",
                text=json.dumps(payload, indent=2, ensure_ascii=False, default=str),
            )
        ],
        isError=is_error,
    )


def _error_result(message: str) -> types.CallToolResult:
    return _text_result({"error": message}, is_error=True)


def _format_validation_error(tool_name: str, e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        location = ".".join(str(part) for part in err["loc"]) or "arguments"
        problems.append(f"{location}: {err['msg']}")
    return f"Invalid arguments for {tool_name}: " + "; ".join(problems)


class ToolDispatcher:
    """Routes MCP tool calls to CigamClient operations"""

    def __init__(self, client: CigamClient, tools: Optional[List[ToolDefinition]] = None):
        self.client = client
        self.tools = {tool.name: tool for tool in tools} if tools is not None else TOOLS_BY_NAME

    def list_tools(self) -> List[types.Tool]:
        return [tool.to_tool() for tool in self.tools.values()]

    async def call(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> types.CallToolResult:
        """
        Invoke a tool by name

        Never raises: unknown tools, invalid arguments and CIGAM failures are
        all returned as results with isError set.
        """
        tool = self.tools.get(name)
        if tool is None:
            logger.warning("Unknown tool requested: %s", name)
            return _error_result(f"Unknown tool: {name}")

        logger.info("%s called with: %s", name, sorted((arguments or {}).keys()))
        try:
            params = tool.input_model.model_validate(arguments or {})
        except ValidationError as e:
            message = _format_validation_error(name, e)
            logger.warning(message)
            return _error_result(message)

        try:
            result = await tool.handler(self.client, params)
        except Exception as e:
            logger.warning("%s failed: %s", name, e)
            return _error_result(str(e) or type(e).__name__)

        return _text_result({tool.result_key: result})


def build_server(dispatcher: ToolDispatcher) -> Server:
    server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return dispatcher.list_tools()

    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        return await dispatcher.call(name, arguments)

    return server


# ─── Entry Point ─────────────────────────────────────────────────────────────


async def serve(settings: Settings) -> None:
    async with CigamClient(settings.base_url, settings.pin, timeout=settings.timeout) as client:
        server = build_server(ToolDispatcher(client))
        async with stdio_server() as (read_stream, write_stream):
            logger.info("CIGAM MCP server running (%s)", settings.base_url)
            await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    load_dotenv()
    try:
        settings = load_settings()
    except CigamConfigurationError as e:
        configure_logging()
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    configure_logging(settings.log_level)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("Server error")
        sys.exit(1)


if __name__ == "__main__":
    main()
