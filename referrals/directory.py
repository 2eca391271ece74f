"""
Member directory adapter.

Members live in OfficeRnD, the membership manager. The ledger only needs to
read a member, write a few custom properties (`referralOwnCode`,
`referralCodeUsed`) and post a fee, which is how referral rewards are credited
against the member's next invoice.

API Documentation: https://developer.officernd.com/
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

import httpx

from .errors import DirectoryError
from .models import utc_now
from .settings import Settings

logger = logging.getLogger(__name__)


class MemberDirectory(ABC):
    @abstractmethod
    def get_member(self, member_id: str) -> dict: ...

    @abstractmethod
    def update_member(self, member_id: str, properties: dict) -> None: ...

    @abstractmethod
    def add_new_fee(self, *, member_id: str, fee_name: str, plan_id: str, price: Decimal,
                    issue_date: datetime, company_id: Optional[str]) -> str:
        """Create a fee for the member and return its id."""


class OfficeRndDirectory(MemberDirectory):
    # Refresh the token a little before OfficeRnD expires it.
    TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self._client = client or httpx.Client(timeout=settings.officernd_timeout_seconds)
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @property
    def base_url(self) -> str:
        return f"{self.settings.officernd_api_url}/{self.settings.officernd_org_slug}"

    def get_member(self, member_id: str) -> dict:
        logger.info("Getting OfficeRnD member %s", member_id)
        return self._request("GET", f"members/{member_id}", expected=200)

    def update_member(self, member_id: str, properties: dict) -> None:
        logger.info("Updating OfficeRnD member %s properties %s", member_id, sorted(properties))
        if self.settings.is_development:
            logger.info("Skipping OfficeRnD member update in development mode")
            return
        self._request("PUT", f"members/{member_id}", expected=200, json={"properties": properties})

    def add_new_fee(self, *, member_id: str, fee_name: str, plan_id: str, price: Decimal,
                    issue_date: datetime, company_id: Optional[str]) -> str:
        logger.info("Adding OfficeRnD fee '%s' of %s EUR for member %s", fee_name, price, member_id)
        if self.settings.is_development:
            logger.info("Skipping OfficeRnD fee creation in development mode")
            return "development-fee-id"

        body = {
            "name": fee_name,
            "issueDate": issue_date.date().isoformat(),
            "location": self.settings.officernd_default_location_id,
            "plan": plan_id,
            "price": float(price),
            "member": member_id,
        }
        if company_id is not None:
            body["company"] = company_id

        created = self._request("POST", "fees", expected=201, json=body)
        fee_id = created.get("_id")
        if not fee_id:
            raise DirectoryError("OfficeRnD fee response carried no id", {"memberId": member_id})
        return fee_id

    def _access_token(self) -> str:
        now = self._clock()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        if not (self.settings.officernd_client_id and self.settings.officernd_client_secret):
            raise DirectoryError("OfficeRnD client credentials are not configured")

        try:
            response = self._client.post(self.settings.officernd_token_url, data={
                "client_id": self.settings.officernd_client_id,
                "client_secret": self.settings.officernd_client_secret,
                "grant_type": "client_credentials",
                "scope": self.settings.officernd_scopes,
            })
        except httpx.HTTPError as e:
            raise DirectoryError("OfficeRnD token request failed", {"error": str(e)}) from e

        if response.status_code != 200:
            raise DirectoryError(
                "OfficeRnD token request was rejected",
                {"status": response.status_code, "body": response.text},
            )

        payload = response.json()
        self._token = payload["access_token"]
        expires_in = timedelta(seconds=int(payload.get("expires_in", 3600)))
        self._token_expires_at = now + expires_in - self.TOKEN_EXPIRY_MARGIN
        return self._token

    def _request(self, method: str, path: str, *, expected: int, json: Optional[dict] = None) -> dict:
        headers = {
            "accept": "application/json",
            "authorization": f"Bearer {self._access_token()}",
        }
        try:
            response = self._client.request(method, f"{self.base_url}/{path}", headers=headers, json=json)
        except httpx.HTTPError as e:
            raise DirectoryError(f"OfficeRnD {method} {path} failed", {"error": str(e)}) from e

        if response.status_code != expected:
            raise DirectoryError(
                f"OfficeRnD {method} {path} returned {response.status_code}",
                {"status": response.status_code, "body": response.text},
            )
        return response.json() if response.content else {}
