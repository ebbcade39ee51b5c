"""
CIGAM ERP REST client.

Thin async wrapper around the CIGAM integration API. Every request carries the
integration PIN as a query parameter; responses are unwrapped to their JSON body
and failures are raised as CigamError subclasses with readable messages.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# ─── Configuration ───────────────────────────────────────────────────────────

API_PREFIX = "/api/v1"
DEFAULT_LIMIT = 100
DEFAULT_UNIT = "UN"
DEFAULT_PRIORITY = "medium"
REQUEST_TIMEOUT = 30.0

# ─── Errors ──────────────────────────────────────────────────────────────────


class CigamError(Exception):
    """Base exception for the CIGAM client"""
    pass


class CigamConfigurationError(CigamError):
    """Raised when the base URL or PIN is missing"""
    pass


class CigamAPIError(CigamError):
    """Raised when the server answers with a non-2xx status"""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"CIGAM API Error: {status_code} - {detail}")


class CigamConnectionError(CigamError):
    """Raised when a request was sent but no response came back"""

    def __init__(self) -> None:
        super().__init__("No response from CIGAM server")


class CigamRequestError(CigamError):
    """Raised when a request could not be built or sent"""

    def __init__(self, description: str):
        super().__init__(f"Request error: {description}")


# ─── Parameter Helpers ───────────────────────────────────────────────────────


def camel_to_snake(key: str) -> str:
    """Rewrite a camelCase key as snake_case ("materialCode" -> "material_code")."""
    chars: List[str] = []
    for ch in key:
        if ch.isupper():
            chars.append("_")
            chars.append(ch.lower())
        else:
            chars.append(ch)
    return "".join(chars)


def build_query_params(filters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Drop empty filter values and convert the remaining keys to snake_case."""
    params: Dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if value is None or value == "":
            continue
        params[camel_to_snake(key)] = value
    return params


def _flatten_params(params: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, Any]]:
    """Expand nested values into bracketed keys: range[min]=1, codes[]=A."""
    pairs: List[Tuple[str, Any]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(_flatten_params(value, name))
        elif isinstance(value, (list, tuple, set)):
            pairs.extend((f"{name}[]", item) for item in value if item is not None)
        elif value is not None:
            pairs.append((name, value))
    return pairs


# ─── Date Helpers ────────────────────────────────────────────────────────────


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))


def is_valid_date(value: Any) -> bool:
    """Return True if value is an ISO-8601 date or date-time string."""
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        _parse_iso(value)
    except ValueError:
        return False
    return True


def format_date(value: Union[str, date, datetime]) -> str:
    """Render a date-like value as YYYY-MM-DD, dropping the time of day.

    Aware date-times are converted to UTC first. Raises ValueError for strings
    that do not parse.
    """
    if isinstance(value, str):
        value = _parse_iso(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    return value.strftime("%Y-%m-%d")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ─── Requisition Items ───────────────────────────────────────────────────────


class RequisitionItem(BaseModel):
    """A single line of a purchase requisition."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )

    material_code: str = Field(..., description="Material code", min_length=1)
    quantity: Union[int, float] = Field(..., description="Quantity to requisition")
    unit: Optional[str] = Field(default=None, description="Unit of measure (defaults to UN)")
    required_date: Optional[str] = Field(default=None, description="ISO date string for required date")
    cost_center: Optional[str] = Field(default=None, description="Cost center code")
    notes: Optional[str] = Field(default=None, description="Optional notes")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "material_code": self.material_code,
            "quantity": self.quantity,
            "unit": self.unit or DEFAULT_UNIT,
        }
        if self.required_date:
            payload["required_date"] = self.required_date
        if self.cost_center:
            payload["cost_center"] = self.cost_center
        if self.notes:
            payload["notes"] = self.notes
        return payload


# ─── Client ──────────────────────────────────────────────────────────────────


class CigamClient:
    """Client for the CIGAM ERP integration API"""

    is_valid_date = staticmethod(is_valid_date)
    format_date = staticmethod(format_date)

    def __init__(
        self,
        base_url: Optional[str],
        pin: Optional[str],
        *,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not base_url or not pin:
            raise CigamConfigurationError(
                "CIGAM_BASE_URL and CIGAM_PIN environment variables are required"
            )

        self.base_url = base_url[:-1] if base_url.endswith("/") else base_url
        self.pin = pin
        self.clock = clock or _utc_now
        self.http_client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "CigamClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """
        Send an authenticated request and return the decoded response body

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Query parameters, merged after any query already in path;
                nested values are sent as bracketed keys. The PIN always wins.
            json: JSON body for write requests

        Returns:
            Decoded JSON body, raw text if the body is not JSON, or None if empty

        Raises:
            CigamAPIError: The server answered with a non-2xx status
            CigamConnectionError: No response was received
            CigamRequestError: The request could not be sent
        """
        method = method.upper()
        logger.debug("%s %s params=%s", method, path, params)
        path, _, existing = path.partition("?")
        query = httpx.QueryParams(existing).merge(_flatten_params(params or {})).set("pin", self.pin)
        try:
            response = await self.http_client.request(
                method, path, params=query, json=json
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, httpx.LocalProtocolError) as e:
            logger.warning("Could not send %s %s: %s", method, path, e)
            raise CigamRequestError(str(e) or type(e).__name__) from e
        except httpx.TransportError as e:
            logger.warning("No response for %s %s: %s", method, path, type(e).__name__)
            raise CigamConnectionError() from e
        except httpx.RequestError as e:
            logger.warning("Request %s %s failed: %s", method, path, e)
            raise CigamRequestError(str(e) or type(e).__name__) from e

        if not response.is_success:
            detail = _error_detail(response)
            logger.warning("%s %s failed with %s: %s", method, path, response.status_code, detail)
            raise CigamAPIError(response.status_code, detail)

        return _decode_body(response)

    # ─── Domain Operations ───────────────────────────────────────────────────

    async def _list(
        self, path: str, filters: Optional[Mapping[str, Any]], limit: int
    ) -> Any:
        params = build_query_params(filters)
        params["limit"] = limit
        return await self.request("GET", path, params=params)

    async def get_materials(
        self, filters: Optional[Mapping[str, Any]] = None, limit: int = DEFAULT_LIMIT
    ) -> Any:
        """Get materials/products."""
        return await self._list(f"{API_PREFIX}/materials", filters, limit)

    async def get_stock(self, material_code: str, warehouse: Optional[str] = None) -> Any:
        """Get stock levels for a material, optionally for a single warehouse."""
        params: Dict[str, Any] = {"material_code": material_code}
        if warehouse:
            params["warehouse"] = warehouse
        return await self.request("GET", f"{API_PREFIX}/stock", params=params)

    async def get_purchase_orders(
        self, filters: Optional[Mapping[str, Any]] = None, limit: int = DEFAULT_LIMIT
    ) -> Any:
        return await self._list(f"{API_PREFIX}/purchase_orders", filters, limit)

    async def get_invoices(
        self, filters: Optional[Mapping[str, Any]] = None, limit: int = DEFAULT_LIMIT
    ) -> Any:
        return await self._list(f"{API_PREFIX}/invoices", filters, limit)

    async def get_accounts(
        self, filters: Optional[Mapping[str, Any]] = None, limit: int = DEFAULT_LIMIT
    ) -> Any:
        """Get customer/supplier accounts."""
        return await self._list(f"{API_PREFIX}/accounts", filters, limit)

    async def create_requisition(
        self,
        items: Iterable[Union[RequisitionItem, Mapping[str, Any]]],
        requestor: Optional[str],
        priority: Optional[str] = None,
    ) -> Any:
        """
        Create a purchase requisition

        Args:
            items: Requisition lines, as RequisitionItem or camelCase mappings
            requestor: Requestor name or code
            priority: Priority level (low, medium, high), defaults to medium

        Returns:
            The created requisition as returned by CIGAM
        """
        lines = [
            item if isinstance(item, RequisitionItem) else RequisitionItem.model_validate(item)
            for item in items
        ]
        payload = {
            "items": [line.to_payload() for line in lines],
            "requestor": requestor,
            "priority": priority or DEFAULT_PRIORITY,
            "request_date": _iso_timestamp(self.clock()),
        }
        return await self.request("POST", f"{API_PREFIX}/requisitions", json=payload)

    async def custom_query(
        self,
        service: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Call an arbitrary CIGAM endpoint

        GET and DELETE send the normalized params as the query string; other
        methods send params unchanged as the JSON body.
        """
        method = (method or "GET").upper()
        path = service if service.startswith("/") else f"{API_PREFIX}/{service}"
        if method in ("GET", "DELETE"):
            return await self.request(method, path, params=build_query_params(params))
        return await self.request(method, path, json=params or {})


# ─── Response Helpers ────────────────────────────────────────────────────────


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_detail(response: httpx.Response) -> str:
    """Server-provided message if present, else the standard reason phrase."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase
