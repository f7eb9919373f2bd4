"""
HTTP clients for the chat vendor API and the org directory service.

Both clients retry transport failures (timeouts, refused connections) with
exponential backoff and translate every other failure into the service's
exception taxonomy at this boundary, so callers never see raw httpx errors.
The current transaction id is forwarded on every request.
"""

import logging
from typing import Any

import httpx
from pydantic import ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from apps.chat_sync.metrics import POD_LABEL, vendor_mutations_total
from apps.chat_sync.schemas import (
    Branch,
    GroupFilter,
    GroupPayload,
    JobCategory,
    OrgMember,
    VendorGroup,
    VendorMessage,
    VendorUser,
    VendorUserPayload,
    VendorUserUpdate,
)
from libs.common.exceptions import DirectoryCallFailedError, VendorCallFailedError
from libs.common.logging import get_transaction_client

logger = logging.getLogger(__name__)


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


# ==============================================================================
# Chat Vendor Client
# ==============================================================================


class ChatVendorClient:
    """
    HTTP client for the chat vendor REST API.

    Implements the vendor gateway used by the reconciler: user identities,
    groups, occupants and group messages.

    Example:
        >>> client = ChatVendorClient("https://chat.example.com/api", api_token="...")
        >>> users = await client.list_users(vendor_ids=["101", "102"])
        >>> await client.add_occupants("g-1", ["101"])
        >>> await client.close()
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize chat vendor client.

        Args:
            base_url: Base URL of the vendor API
            api_token: Bearer token for the vendor API
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = get_transaction_client(
            base_url=self.base_url,
            timeout=timeout,
            headers=_auth_headers(api_token),
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Chat vendor health check failed: {e}")
            return False

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.client.request(method, path, **kwargs)

    async def _request(
        self,
        method: str,
        path: str,
        ok_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and raise VendorCallFailedError on any failure.

        Args:
            ok_statuses: Error statuses the caller handles itself (e.g. 404 on delete)
        """
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise VendorCallFailedError(f"{method} {path} failed: {exc}") from exc

        if response.is_error and response.status_code not in ok_statuses:
            logger.error(
                f"Chat vendor returned error: {response.status_code}",
                extra={"method": method, "path": path, "response": response.text[:500]},
            )
            raise VendorCallFailedError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    # --------------------------------------------------------------------------
    # Users
    # --------------------------------------------------------------------------

    async def create_user(self, payload: VendorUserPayload) -> VendorUser:
        """
        Create a vendor identity for a member.

        The employee id doubles as the vendor login so that a retried create
        after a lost response is rejected instead of duplicating the user.
        """
        body = {
            "login": payload.employee_ps_id,
            "email": payload.email,
            "full_name": payload.display_name,
            "custom_data": payload.custom_data.model_dump(mode="json"),
        }
        response = await self._request("POST", "/users", json=body)
        vendor_mutations_total.labels(action="create_user", pod=POD_LABEL).inc()
        return VendorUser.model_validate(response.json())

    async def list_users(
        self,
        vendor_ids: list[str] | None = None,
        emails: list[str] | None = None,
        limit: int = 100,
    ) -> list[VendorUser]:
        """
        Look up users by vendor id or by email (exactly one of the two).

        Raises:
            ValueError: If both or neither filter is given
        """
        if (vendor_ids is None) == (emails is None):
            raise ValueError("Pass exactly one of vendor_ids or emails")
        if vendor_ids is not None:
            params = {"ids": ",".join(vendor_ids), "per_page": limit}
        else:
            params = {"emails": ",".join(emails or []), "per_page": limit}

        response = await self._request("GET", "/users", params=params)
        return [VendorUser.model_validate(item) for item in response.json().get("items", [])]

    async def update_user(self, vendor_id: str, update: VendorUserUpdate) -> None:
        await self._request(
            "PUT",
            f"/users/{vendor_id}",
            json={
                "email": update.email,
                "full_name": update.full_name,
                "custom_data": update.custom_data.model_dump(mode="json"),
            },
        )
        vendor_mutations_total.labels(action="update_user", pod=POD_LABEL).inc()

    async def delete_user(self, vendor_id: str) -> None:
        """Delete a vendor user. An already-deleted user is not an error."""
        response = await self._request("DELETE", f"/users/{vendor_id}", ok_statuses=(404,))
        if response.status_code != 404:
            vendor_mutations_total.labels(action="delete_user", pod=POD_LABEL).inc()

    # --------------------------------------------------------------------------
    # Groups
    # --------------------------------------------------------------------------

    async def create_group(self, payload: GroupPayload) -> str:
        """
        Create a group and return its vendor id.

        Raises:
            VendorCallFailedError: If the call fails or the response lacks an id
        """
        body = {
            "name": payload.name,
            "occupant_ids": payload.occupant_ids,
            "type": "announcement" if payload.is_announcement else "group",
            "data": {
                "branch_id": payload.branch_id,
                "branch_name": payload.branch_name,
                "is_announcement": payload.is_announcement,
                "is_archived": payload.is_archived,
                "primary_member_ps_id": payload.primary_member_ps_id,
            },
        }
        response = await self._request("POST", "/groups", json=body)
        group_id = response.json().get("id")
        if not group_id:
            raise VendorCallFailedError(f"create_group returned no id for '{payload.name}'")
        vendor_mutations_total.labels(action="create_group", pod=POD_LABEL).inc()
        return str(group_id)

    async def list_groups(
        self, group_filter: GroupFilter, skip: int = 0, limit: int = 100
    ) -> list[VendorGroup]:
        """
        List one page of groups, newest first.

        Args:
            group_filter: Branch, group id, occupant and type constraints
            skip: Number of groups to skip
            limit: Page size (vendor maximum is 100)
        """
        params: dict[str, Any] = {"skip": skip, "limit": limit, "sort_desc": "created_at"}
        if group_filter.branch_id is not None:
            params["branch_id"] = group_filter.branch_id
        if group_filter.group_id is not None:
            params["id"] = group_filter.group_id
        if group_filter.vendor_ids:
            params["occupant_ids"] = ",".join(group_filter.vendor_ids)
        if group_filter.group_type is not None:
            params["type"] = group_filter.group_type.value

        response = await self._request("GET", "/groups", params=params)
        groups = []
        for item in response.json().get("items", []):
            data = item.get("data") or {}
            try:
                groups.append(
                    VendorGroup(
                        id=str(item["id"]),
                        name=item.get("name", ""),
                        occupant_ids=[str(o) for o in item.get("occupant_ids", [])],
                        is_announcement=bool(data.get("is_announcement", False)),
                        is_archived=bool(data.get("is_archived", False)),
                        branch_id=data.get("branch_id"),
                        branch_name=data.get("branch_name"),
                        primary_member_ps_id=data.get("primary_member_ps_id"),
                        created_at=item.get("created_at"),
                    )
                )
            except (KeyError, ValidationError) as exc:
                raise VendorCallFailedError(f"Malformed group in list_groups: {exc}") from exc
        return groups

    async def update_group(
        self,
        group_id: str,
        *,
        is_archived: bool | None = None,
        name: str | None = None,
    ) -> None:
        body: dict[str, Any] = {}
        if name is not None:
            body["name"] = name
        if is_archived is not None:
            body["data"] = {"is_archived": is_archived}
        await self._request("PUT", f"/groups/{group_id}", json=body)
        vendor_mutations_total.labels(action="update_group", pod=POD_LABEL).inc()

    async def delete_group(self, group_id: str) -> None:
        """
        Delete a group.

        A 404 means the group is already gone. When the vendor refuses the
        delete (403, the account is not the group owner) the group is archived
        instead so it stops surfacing to members.
        """
        response = await self._request("DELETE", f"/groups/{group_id}", ok_statuses=(403, 404))
        if response.status_code == 403:
            logger.warning(
                "Vendor refused group delete, archiving instead", extra={"group_id": group_id}
            )
            await self.update_group(group_id, is_archived=True)
            return
        if response.status_code != 404:
            vendor_mutations_total.labels(action="delete_group", pod=POD_LABEL).inc()

    async def add_occupants(self, group_id: str, vendor_ids: list[str]) -> None:
        await self._request(
            "PUT", f"/groups/{group_id}/occupants", json={"push_all": {"occupant_ids": vendor_ids}}
        )
        vendor_mutations_total.labels(action="add_occupants", pod=POD_LABEL).inc()

    async def remove_occupants(self, group_id: str, vendor_ids: list[str]) -> None:
        await self._request(
            "PUT", f"/groups/{group_id}/occupants", json={"pull_all": {"occupant_ids": vendor_ids}}
        )
        vendor_mutations_total.labels(action="remove_occupants", pod=POD_LABEL).inc()

    async def list_group_messages(
        self,
        group_id: str,
        after_message_id: str | None = None,
        limit: int = 100,
        ascending: bool = True,
    ) -> list[VendorMessage]:
        params: dict[str, Any] = {"limit": limit, "sort": "asc" if ascending else "desc"}
        if after_message_id:
            params["after_id"] = after_message_id
        response = await self._request("GET", f"/groups/{group_id}/messages", params=params)
        return [
            VendorMessage.model_validate({**item, "group_id": group_id})
            for item in response.json().get("items", [])
        ]


# ==============================================================================
# Org Directory Client
# ==============================================================================


class OrgDirectoryClient:
    """
    HTTP client for the org directory (users, branches, jobs).

    Example:
        >>> client = OrgDirectoryClient("http://localhost:8011")
        >>> members = await client.get_active_members("42", job_levels=[1, 2], skip=0, limit=200)
        >>> categories = await client.get_job_categories("RN")
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = get_transaction_client(
            base_url=self.base_url,
            timeout=timeout,
            headers=_auth_headers(api_token),
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.client.request(method, path, **kwargs)

    async def _request(
        self, method: str, path: str, ok_statuses: tuple[int, ...] = (), **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise DirectoryCallFailedError(f"{method} {path} failed: {exc}") from exc

        if response.is_error and response.status_code not in ok_statuses:
            logger.error(
                f"Org directory returned error: {response.status_code}",
                extra={"method": method, "path": path, "response": response.text[:500]},
            )
            raise DirectoryCallFailedError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def get_branch(self, branch_id: str) -> Branch | None:
        response = await self._request("GET", f"/branches/{branch_id}", ok_statuses=(404,))
        if response.status_code == 404:
            return None
        return Branch.model_validate(response.json())

    async def get_active_members(
        self,
        branch_id: str,
        job_levels: list[int] | None = None,
        skip: int = 0,
        limit: int = 200,
    ) -> list[OrgMember]:
        """
        Read one page of a branch roster.

        The directory filters on active status server-side, but inactive
        members can still appear while a status change propagates.
        """
        params: dict[str, Any] = {"skip": skip, "limit": limit, "active_only": "true"}
        if job_levels:
            params["job_levels"] = ",".join(str(level) for level in job_levels)
        response = await self._request("GET", f"/branches/{branch_id}/members", params=params)
        return [OrgMember.model_validate(item) for item in response.json().get("items", [])]

    async def get_member(self, employee_ps_id: str) -> OrgMember | None:
        response = await self._request("GET", f"/members/{employee_ps_id}", ok_statuses=(404,))
        if response.status_code == 404:
            return None
        return OrgMember.model_validate(response.json())

    async def get_members(self, employee_ps_ids: list[str]) -> list[OrgMember]:
        if not employee_ps_ids:
            return []
        response = await self._request(
            "GET", "/members", params={"ps_ids": ",".join(employee_ps_ids)}
        )
        return [OrgMember.model_validate(item) for item in response.json().get("items", [])]

    async def link_vendor_identity(self, employee_ps_id: str, vendor_id: str) -> None:
        """Record a newly created vendor identity on the member."""
        await self._request(
            "PATCH", f"/members/{employee_ps_id}/vendor", json={"vendor_id": vendor_id}
        )

    async def get_job_categories(self, job_id: str) -> list[JobCategory]:
        """Return the job's categories; unknown category names are ignored."""
        response = await self._request("GET", f"/jobs/{job_id}", ok_statuses=(404,))
        if response.status_code == 404:
            return []
        categories = []
        for raw in response.json().get("categories", []):
            try:
                categories.append(JobCategory(raw))
            except ValueError:
                logger.debug("Ignoring unknown job category", extra={"job_id": job_id, "category": raw})
        return categories
