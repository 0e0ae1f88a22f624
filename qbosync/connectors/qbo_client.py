"""
QuickBooks Online API client with OAuth2 token endpoints.

This module provides the async HTTP boundary to Intuit:
- OAuth2 authorization URL, code exchange, refresh and revocation
- Entity create/update/get and queries against one company (realm)
- Per-realm request throttling within QuickBooks' 500 requests/minute limit
- Classification of every failure into the sync error taxonomy

The client is stateless with respect to credentials: callers pass the access
token obtained from the token refresher, and refreshed tokens are returned to
the caller for persistence rather than kept in memory.
"""

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from qbosync.config import Settings, get_settings
from qbosync.models.connection import OAuthTokens
from qbosync.sync.errors import (
    NotFoundRemote,
    RateLimited,
    ReauthorizationRequired,
    TransientNetworkError,
    ValidationRejected,
)
from qbosync.utils.timeutil import to_naive_utc, utcnow

logger = structlog.get_logger(__name__)

# QuickBooks fault codes with special handling
FAULT_OBJECT_NOT_FOUND = "610"
FAULT_STALE_OBJECT = "5010"
FAULT_DUPLICATE_DOC_NUMBER = "6140"


class QBOAuthError(Exception):
    """Raised when the authorization code exchange fails."""

    pass


class AccessTokenRejected(TransientNetworkError):
    """The API returned 401 for a token we believed valid; force a refresh and retry."""

    pass


def escape_query_literal(value: str) -> str:
    """Escape a string for use inside a QuickBooks query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header (delta-seconds or HTTP date) into seconds.

    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    when = to_naive_utc(when)
    now = now or utcnow()
    return max(0.0, (when - now).total_seconds())


def _fault_errors(payload: Any) -> list[dict]:
    """Extract the Fault.Error list from a QuickBooks error body."""
    if not isinstance(payload, dict):
        return []
    fault = payload.get("Fault") or payload.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    return [e for e in errors if isinstance(e, dict)]


class QBOClient:
    """
    QuickBooks Online OAuth2 and API client factory.

    Handles the OAuth2 token endpoints and hands out QBOCompanyClient
    instances bound to one realm and access token. A single instance is
    meant to be shared so connection pooling and throttling span all jobs.

    Attributes:
        client_id: Intuit OAuth2 client ID
        client_secret: Intuit OAuth2 client secret
        redirect_uri: OAuth2 callback URL
        environment: "sandbox" or "production"
    """

    # Rate limiting: QuickBooks allows 500 requests per minute per realm
    RATE_LIMIT_REQUESTS = 500
    RATE_LIMIT_WINDOW = 60  # seconds

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        environment: str = "sandbox",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        scopes: Optional[list[str]] = None,
    ):
        """
        Initialize QuickBooks Online API client.

        Args:
            client_id: Intuit OAuth2 client ID
            client_secret: Intuit OAuth2 client secret
            redirect_uri: OAuth2 callback URL
            environment: "sandbox" or "production"
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
            scopes: OAuth scopes requested during authorization
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.environment = environment
        self.timeout = timeout
        self.scopes = scopes or ["com.intuit.quickbooks.accounting"]

        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._request_times: dict[str, deque[datetime]] = defaultdict(deque)
        self._throttle_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        logger.info(
            "qbo_client_initialized",
            environment=environment,
            has_credentials=bool(client_id and client_secret),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "QBOClient":
        settings = settings or get_settings()
        return cls(
            client_id=settings.intuit_client_id,
            client_secret=settings.intuit_client_secret,
            redirect_uri=settings.intuit_redirect_uri,
            environment=settings.intuit_env,
            timeout=settings.http_timeout_seconds,
            transport=transport,
            scopes=settings.intuit_scopes.split(),
        )

    async def __aenter__(self):
        """Async context manager entry."""
        self._get_http_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    def _get_base_url(self) -> str:
        """Get QuickBooks API base URL based on environment."""
        if self.environment == "production":
            return "https://quickbooks.api.intuit.com"
        return "https://sandbox-quickbooks.api.intuit.com"

    def _get_token_url(self) -> str:
        return "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"

    def _get_revoke_url(self) -> str:
        return "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

    # =========================================================================
    # OAuth2
    # =========================================================================

    def get_authorization_url(self, state: str) -> str:
        """
        Build the Intuit consent URL.

        Args:
            state: Opaque state value bound to the organization (see auth.oauth_state)

        Returns:
            Complete authorization URL for user redirection
        """
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"https://appcenter.intuit.com/connect/oauth2?{urlencode(params)}"

    async def exchange_code(self, auth_code: str) -> OAuthTokens:
        """
        Exchange an authorization code for access and refresh tokens.

        Raises:
            QBOAuthError: If the exchange fails for any reason
        """
        data = {
            "grant_type": "authorization_code",
            "code": auth_code,
            "redirect_uri": self.redirect_uri,
        }

        try:
            response = await self._post_token_endpoint(data)
        except httpx.HTTPError as e:
            logger.error("oauth_code_exchange_error", error=str(e))
            raise QBOAuthError(f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            logger.error(
                "oauth_code_exchange_failed",
                status_code=response.status_code,
                oauth_error=_oauth_error_code(response),
            )
            raise QBOAuthError(f"Failed to exchange authorization code (HTTP {response.status_code})")

        tokens = OAuthTokens.model_validate(response.json())
        if not tokens.refresh_token:
            raise QBOAuthError("Token response did not include a refresh token")

        logger.info("oauth_code_exchanged", expires_in=tokens.expires_in)
        return tokens

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        """
        Exchange a refresh token for a new access token (and usually a new
        refresh token; Intuit rotates them).

        Raises:
            ReauthorizationRequired: invalid_grant or any other credential rejection
            TransientNetworkError: network failure, 5xx or 429
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}

        try:
            response = await self._post_token_endpoint(data)
        except httpx.TimeoutException as e:
            logger.warning("token_refresh_timeout", error=str(e))
            raise TransientNetworkError("Token refresh timed out", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.warning("token_refresh_network_error", error=str(e))
            raise TransientNetworkError("Token endpoint unreachable", detail=str(e)) from e

        if response.status_code == 200:
            tokens = OAuthTokens.model_validate(response.json())
            logger.info("tokens_refreshed", expires_in=tokens.expires_in)
            return tokens

        oauth_error = _oauth_error_code(response)
        logger.warning(
            "token_refresh_failed",
            status_code=response.status_code,
            oauth_error=oauth_error,
        )

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(
                f"Token refresh failed (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        raise ReauthorizationRequired(
            f"Refresh token rejected ({oauth_error or 'HTTP ' + str(response.status_code)})",
            detail=oauth_error,
            status_code=response.status_code,
        )

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke a refresh or access token at Intuit. Best effort.

        Returns:
            True if Intuit acknowledged the revocation
        """
        try:
            response = await self._get_http_client().post(
                self._get_revoke_url(),
                json={"token": token},
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            logger.warning("token_revoke_error", error=str(e))
            return False

        if response.status_code != 200:
            logger.warning("token_revoke_failed", status_code=response.status_code)
            return False
        return True

    async def _post_token_endpoint(self, data: dict[str, str]) -> httpx.Response:
        return await self._get_http_client().post(
            self._get_token_url(),
            data=data,
            headers={"Accept": "application/json", "Content-Type": "application/x-www-form-urlencoded"},
            auth=(self.client_id, self.client_secret),
        )

    # =========================================================================
    # Company API
    # =========================================================================

    def company(self, realm_id: str, access_token: str) -> "QBOCompanyClient":
        """Get an API client bound to one company and access token."""
        return QBOCompanyClient(self, realm_id, access_token)

    async def _rate_limit_wait(self, realm_id: str) -> None:
        """
        Keep each realm under QuickBooks' per-minute request limit.

        Tracks request times per realm and delays when the window is full.
        Each realm has its own lock, so a throttled realm never delays another.
        """
        async with self._throttle_locks[realm_id]:
            now = utcnow()
            window = self._request_times[realm_id]
            cutoff = now - timedelta(seconds=self.RATE_LIMIT_WINDOW)
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= self.RATE_LIMIT_REQUESTS:
                sleep_time = (window[0] - cutoff).total_seconds()
                if sleep_time > 0:
                    logger.warning("rate_limit_throttling", realm_id=realm_id, sleep_seconds=sleep_time)
                    await asyncio.sleep(sleep_time)
                window.popleft()

            window.append(utcnow())


class QBOCompanyClient:
    """
    Entity operations against one QuickBooks company.

    Every failure is raised as a sync taxonomy error; callers never see raw
    httpx exceptions.
    """

    # QuickBooks entity types this client can address
    SUPPORTED_ENTITY_TYPES = [
        "Invoice",
        "Payment",
        "Customer",
        "Item",
        "Account",
        "Bill",
        "Vendor",
    ]

    def __init__(self, client: QBOClient, realm_id: str, access_token: str):
        self._client = client
        self.realm_id = realm_id
        self._access_token = access_token

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> dict[str, Any]:
        """
        Make one authenticated API request and classify the outcome.

        Raises:
            TransientNetworkError: timeouts, transport errors, 5xx, stale SyncToken
            AccessTokenRejected: 401
            RateLimited: 429 (with the Retry-After hint when provided)
            ReauthorizationRequired: 403
            NotFoundRemote: 404, or fault 610 (object not found / deleted)
            ValidationRejected: other 4xx
        """
        await self._client._rate_limit_wait(self.realm_id)

        url = f"{self._client._get_base_url()}/v3/company/{self.realm_id}/{endpoint}"
        query = {"minorversion": "70"}
        query.update(params or {})
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

        try:
            response = await self._client._get_http_client().request(
                method, url, params=query, json=data, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning("qbo_api_timeout", method=method, endpoint=endpoint, error=str(e))
            raise TransientNetworkError(f"QuickBooks request timed out ({method} {endpoint})", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.warning("qbo_api_transport_error", method=method, endpoint=endpoint, error=str(e))
            raise TransientNetworkError(f"QuickBooks unreachable ({method} {endpoint})", detail=str(e)) from e

        if response.status_code < 400:
            logger.debug(
                "qbo_api_request_success",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
            )
            return response.json()

        self._raise_for_error(method, endpoint, response)
        return {}

    def _raise_for_error(self, method: str, endpoint: str, response: httpx.Response) -> None:
        status_code = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None
        errors = _fault_errors(body)
        fault_code = str(errors[0].get("code")) if errors and errors[0].get("code") is not None else None
        fault_message = errors[0].get("Message") or errors[0].get("message") if errors else None
        detail = response.text[:2000]

        logger.warning(
            "qbo_api_request_failed",
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            fault_code=fault_code,
        )

        if status_code == 429:
            raise RateLimited(
                "QuickBooks rate limit exceeded",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                status_code=status_code,
                detail=detail,
            )
        if status_code >= 500:
            raise TransientNetworkError(
                f"QuickBooks server error (HTTP {status_code})", status_code=status_code, detail=detail
            )
        if status_code == 401:
            raise AccessTokenRejected("QuickBooks rejected the access token", status_code=status_code, detail=detail)
        if status_code == 403:
            raise ReauthorizationRequired(
                "QuickBooks denied access to the company", status_code=status_code, detail=detail
            )
        if status_code == 404 or fault_code == FAULT_OBJECT_NOT_FOUND:
            raise NotFoundRemote(
                f"QuickBooks record not found ({endpoint})", status_code=status_code, detail=detail
            )
        if fault_code == FAULT_STALE_OBJECT:
            raise TransientNetworkError(
                "QuickBooks record changed concurrently (stale SyncToken)",
                status_code=status_code,
                detail=detail,
            )
        raise ValidationRejected(
            f"QuickBooks rejected the request: {fault_message or 'validation error'}",
            fault_code=fault_code,
            status_code=status_code,
            detail=detail,
        )

    def _check_entity_type(self, entity_type: str) -> None:
        if entity_type not in self.SUPPORTED_ENTITY_TYPES:
            raise ValueError(f"Unsupported entity type: {entity_type}")

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        """
        Retrieve a single entity by ID (idempotent read used for conflict detection).

        Raises:
            NotFoundRemote: If the entity does not exist or was deleted
        """
        self._check_entity_type(entity_type)
        response = await self._make_request("GET", f"{entity_type.lower()}/{entity_id}")
        entity = response.get(entity_type)
        if not entity:
            raise NotFoundRemote(f"QuickBooks {entity_type} {entity_id} not found")
        if entity.get("status") == "Deleted":
            raise NotFoundRemote(f"QuickBooks {entity_type} {entity_id} was deleted")
        return entity

    async def create_entity(
        self, entity_type: str, payload: dict[str, Any], request_id: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Create an entity. request_id makes the call idempotent on Intuit's side.

        Returns:
            The created entity including its Id and SyncToken
        """
        self._check_entity_type(entity_type)
        params = {"requestid": request_id} if request_id else None
        response = await self._make_request("POST", entity_type.lower(), params=params, data=payload)
        entity = response.get(entity_type) or {}

        logger.info("entity_created", entity_type=entity_type, external_id=entity.get("Id"))
        return entity

    async def update_entity(
        self, entity_type: str, payload: dict[str, Any], request_id: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Full update of an existing entity. Payload must carry Id and SyncToken.
        """
        self._check_entity_type(entity_type)
        if not payload.get("Id") or payload.get("SyncToken") is None:
            raise ValueError(f"{entity_type} Id and SyncToken required for update")

        params = {"requestid": request_id} if request_id else None
        response = await self._make_request("POST", entity_type.lower(), params=params, data=payload)
        entity = response.get(entity_type) or {}

        logger.info("entity_updated", entity_type=entity_type, external_id=entity.get("Id"))
        return entity

    async def query_entities(self, query: str) -> dict[str, Any]:
        """Run a QuickBooks query and return the QueryResponse object."""
        response = await self._make_request("GET", "query", params={"query": query})
        return response.get("QueryResponse", {})

    async def get_company_info(self) -> Optional[dict[str, Any]]:
        """Company info for display; None if unavailable."""
        response = await self._make_request("GET", f"companyinfo/{self.realm_id}")
        return response.get("CompanyInfo")

    async def find_customer_by_name(self, display_name: str) -> Optional[dict[str, Any]]:
        query = f"SELECT * FROM Customer WHERE DisplayName = '{escape_query_literal(display_name)}'"
        customers = (await self.query_entities(query)).get("Customer", [])
        return customers[0] if customers else None

    async def get_or_create_customer(self, display_name: str, create: bool = True) -> dict[str, Any]:
        """
        Resolve a customer by display name, creating it when allowed.

        Raises:
            ValidationRejected: If the customer is missing and creation is disabled
        """
        found = await self.find_customer_by_name(display_name)
        if found:
            return found
        if not create:
            raise ValidationRejected(f"QuickBooks customer '{display_name}' does not exist")
        return await self.create_entity("Customer", {"DisplayName": display_name})

    async def get_default_service_item(self, income_account_id: Optional[str] = None) -> dict[str, str]:
        """
        Find a service item to attach unmapped invoice lines to, creating one
        under the given (or first active) income account when none exists.
        """
        items = (await self.query_entities("SELECT * FROM Item WHERE Type = 'Service' MAXRESULTS 1")).get(
            "Item", []
        )
        if items:
            return {"value": items[0]["Id"], "name": items[0].get("Name", "")}

        if not income_account_id:
            accounts = (
                await self.query_entities(
                    "SELECT Id, Name FROM Account WHERE AccountType = 'Income' AND Active = true MAXRESULTS 1"
                )
            ).get("Account", [])
            if not accounts:
                raise ValidationRejected("No active Income account found for a default service item")
            income_account_id = accounts[0]["Id"]

        item = await self.create_entity(
            "Item",
            {
                "Name": "Construction Services",
                "Type": "Service",
                "IncomeAccountRef": {"value": income_account_id},
            },
        )
        return {"value": item["Id"], "name": item.get("Name", "")}

    async def get_last_invoice_number(self) -> Optional[str]:
        query = "SELECT DocNumber FROM Invoice ORDERBY MetaData.CreateTime DESC MAXRESULTS 1"
        invoices = (await self.query_entities(query)).get("Invoice", [])
        return invoices[0].get("DocNumber") if invoices else None


def _oauth_error_code(response: httpx.Response) -> Optional[str]:
    """The OAuth 'error' field of a token endpoint error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("error")
    return None
