"""Salesforce REST + OAuth client.

WHAT:
    Thin httpx wrapper for the calls the lead engine makes:
    - authorization-code (PKCE) and refresh-token grants
    - Lead create (`POST /services/data/<ver>/sobjects/Lead`)
    - Lead describe (createable field list for mapping)

WHY:
    - One place owns timeouts and error translation.
    - A 401 surfaces as `CRMAuthError` so callers can run the
      refresh-and-retry path (careassist/services/crm_token_service.py).
    - Tests inject an `httpx.Client` backed by `httpx.MockTransport`.

REFERENCES:
    - https://help.salesforce.com/s/articleView?id=sf.remoteaccess_oauth_web_server_flow.htm
    - https://developer.salesforce.com/docs/atlas.en-us.api_rest.meta/api_rest/dome_sobject_create.htm
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from careassist.deps import Settings, get_settings

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 7200


class CRMError(Exception):
    """Base class for CRM failures."""


class CRMAuthError(CRMError):
    """The CRM rejected the access token (HTTP 401)."""


class CRMRequestError(CRMError):
    """Any other failed CRM call (HTTP error, timeout, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    instance_url: Optional[str]
    expires_in: int = DEFAULT_EXPIRES_IN


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body. Proxies and maintenance pages answer 200 with HTML."""
    try:
        payload = response.json()
    except ValueError as e:
        raise CRMRequestError(
            "Salesforce returned a non-JSON response",
            status_code=response.status_code,
            body=response.text[:500],
        ) from e
    if not isinstance(payload, dict):
        raise CRMRequestError("Salesforce returned an unexpected response", status_code=response.status_code)
    return payload


def _expires_in(value: Any) -> int:
    try:
        return int(value or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN


class SalesforceClient:
    """
    Salesforce API client.

    Usage:
        client = SalesforceClient()
        lead_id = client.create_lead(instance_url, access_token, {"LastName": "Doe", "Company": "ACME"})
    """

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self.http = http_client or httpx.Client(timeout=self.settings.CRM_HTTP_TIMEOUT_SECONDS)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @property
    def token_url(self) -> str:
        return f"{self.settings.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.settings.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/authorize"

    def exchange_authorization_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenGrant:
        return self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.settings.SALESFORCE_CLIENT_ID or "",
            "client_secret": self.settings.SALESFORCE_CLIENT_SECRET or "",
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        })

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        return self._token_request({
            "grant_type": "refresh_token",
            "client_id": self.settings.SALESFORCE_CLIENT_ID or "",
            "client_secret": self.settings.SALESFORCE_CLIENT_SECRET or "",
            "refresh_token": refresh_token,
        })

    def _token_request(self, data: Dict[str, str]) -> TokenGrant:
        grant_type = data["grant_type"]
        try:
            response = self.http.post(
                self.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.error("[SALESFORCE] %s request failed: %s", grant_type, e)
            raise CRMRequestError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            logger.error("[SALESFORCE] %s rejected: status=%s", grant_type, response.status_code)
            raise CRMRequestError(
                f"Token request rejected ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )

        payload = _json_body(response)
        access_token = payload.get("access_token")
        if not access_token:
            raise CRMRequestError("Token response missing access_token", status_code=response.status_code)

        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            instance_url=payload.get("instance_url"),
            expires_in=_expires_in(payload.get("expires_in")),
        )

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    def _data_url(self, instance_url: str, path: str) -> str:
        return f"{instance_url.rstrip('/')}/services/data/{self.settings.SALESFORCE_API_VERSION}/{path}"

    def _request(self, method: str, url: str, access_token: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        try:
            response = self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise CRMRequestError(f"Salesforce request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise CRMRequestError(f"Salesforce request failed: {e}") from e

        if response.status_code == 401:
            raise CRMAuthError("Salesforce rejected the access token")
        if response.status_code >= 400:
            raise CRMRequestError(
                f"Salesforce returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    def create_lead(self, instance_url: str, access_token: str, fields: Dict[str, Any]) -> str:
        """Create a Lead and return its id."""
        response = self._request("POST", self._data_url(instance_url, "sobjects/Lead"), access_token, json=fields)
        lead_id = _json_body(response).get("id")
        if not lead_id:
            raise CRMRequestError("Lead create response missing id", status_code=response.status_code, body=response.text)
        return lead_id

    def describe_lead(self, instance_url: str, access_token: str) -> List[Dict[str, Any]]:
        """Createable, non-deprecated Lead fields: name, label, type, required."""
        response = self._request("GET", self._data_url(instance_url, "sobjects/Lead/describe"), access_token)
        fields = []
        for f in _json_body(response).get("fields", []):
            if not f.get("createable") or f.get("deprecatedAndHidden"):
                continue
            fields.append({
                "name": f.get("name"),
                "label": f.get("label"),
                "type": f.get("type"),
                # Non-nillable without a default must be supplied on create
                "required": not f.get("nillable", True) and not f.get("defaultedOnCreate", False),
            })
        return fields
