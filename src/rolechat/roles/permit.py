"""
HTTP role store for the hosted authorization service.

Talks to the service's facts API for users, role assignments and
resource instances, and to its policy decision point for permission
checks. Every call is bounded by a timeout and retried a limited number
of times on network errors and 5xx responses.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from loguru import logger

from ..auth.models import ResourceInstance, RoleAssignment, User
from ..errors import UpstreamServiceError
from .store import AssignmentResult, AssignmentStatus, RoleStore

PAGE_SIZE = 100


def _parse_user(data: Dict[str, Any]) -> User:
    return User(
        key=data["key"],
        email=data.get("email") or data["key"],
        first_name=data.get("first_name") or "",
        last_name=data.get("last_name") or "",
        id=data.get("id"),
        attributes=data.get("attributes") or {},
    )


def _parse_assignment(data: Dict[str, Any]) -> RoleAssignment:
    scope = data.get("resource_instance")
    if scope and ":" not in scope and data.get("resource"):
        scope = f"{data['resource']}:{scope}"
    return RoleAssignment(
        user=data["user"],
        role=data["role"],
        tenant=data.get("tenant", "default"),
        resource_instance=scope or None,
    )


def _parse_instance(data: Dict[str, Any]) -> ResourceInstance:
    return ResourceInstance(
        id=data["id"],
        key=data["key"],
        resource=data.get("resource", "channel"),
        tenant=data.get("tenant", "default"),
    )


class PermitRoleStore(RoleStore):
    """Role store backed by the hosted authorization service."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.permit.io",
        pdp_url: str = "https://cloudpdp.api.permit.io",
        project: str = "default",
        environment: str = "production",
        tenant: str = "default",
        timeout: float = 10.0,
        retries: int = 2,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize store.

        Args:
            api_key: Service API key
            api_url: Facts API base URL
            pdp_url: Policy decision point base URL
            project: Project key
            environment: Environment key
            tenant: Tenant key
            timeout: Per-request timeout in seconds
            retries: Extra attempts on network errors and 5xx responses
            session: Shared client session (optional)
        """
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.pdp_url = pdp_url.rstrip("/")
        self.project = project
        self.environment = environment
        self.tenant = tenant
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.retries = retries
        self._session = session
        self._owns_session = session is None

    def _facts(self, path: str) -> str:
        return f"{self.api_url}/v2/facts/{self.project}/{self.environment}/{path}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """
        Send a request with bounded retries.

        Returns:
            (status, decoded JSON body or None)

        Raises:
            UpstreamServiceError: On a malformed body, and on network failure or a 5xx after all retries
        """
        session = self._get_session()
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error = "no attempt made"

        for attempt in range(self.retries + 1):
            try:
                async with session.request(
                    method, url, json=json, params=params, headers=headers, timeout=self.timeout
                ) as resp:
                    body = None
                    if resp.content_type == "application/json" and resp.status < 500:
                        try:
                            body = await resp.json()
                        except ValueError as e:
                            raise UpstreamServiceError(
                                f"{method} {url} returned a malformed body: {e}", resp.status
                            ) from e
                    if resp.status < 500:
                        return resp.status, body
                    last_error = f"{method} {url} returned {resp.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{method} {url} failed: {e}"

            logger.warning(f"Authorization service attempt {attempt + 1} failed: {last_error}")

        raise UpstreamServiceError(last_error)

    @staticmethod
    def _raise_for(status: int, body: Any, what: str):
        detail = body.get("message") if isinstance(body, dict) else None
        raise UpstreamServiceError(f"{what} failed ({status}): {detail or 'unexpected response'}", status)

    async def _list_pages(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            status, body = await self._request(
                "GET", self._facts(path), params={**params, "page": page, "per_page": PAGE_SIZE}
            )
            if status != 200:
                self._raise_for(status, body, f"List {path}")
            if isinstance(body, list):
                return items + body
            items.extend(body.get("data", []))
            if page >= body.get("page_count", 1):
                return items
            page += 1

    async def sync_user(self, user: User) -> User:
        payload = {
            "key": user.key,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "attributes": user.attributes,
        }
        status, body = await self._request("PUT", self._facts(f"users/{user.key}"), json=payload)
        if status not in (200, 201):
            self._raise_for(status, body, "Sync user")
        logger.debug(f"User synced: {user.key}")
        synced = _parse_user(body) if isinstance(body, dict) and "key" in body else user
        synced.avatar_url = user.avatar_url
        return synced

    async def get_user(self, key: str) -> Optional[User]:
        status, body = await self._request("GET", self._facts(f"users/{key}"))
        if status == 404:
            return None
        if status != 200:
            self._raise_for(status, body, "Get user")
        return _parse_user(body)

    async def list_users(self) -> List[User]:
        return [_parse_user(item) for item in await self._list_pages("users", {})]

    async def get_assignments(self, user_key: str) -> List[RoleAssignment]:
        items = await self._list_pages("role_assignments", {"user": user_key, "tenant": self.tenant})
        return [_parse_assignment(item) for item in items]

    def _role_body(self, role: str, resource_instance: Optional[str]) -> Dict[str, Any]:
        body = {"role": role, "tenant": self.tenant}
        if resource_instance:
            body["resource_instance"] = resource_instance
        return body

    async def assign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        assignment = RoleAssignment(user_key, role, self.tenant, resource_instance)
        status, body = await self._request(
            "POST", self._facts(f"users/{user_key}/roles"), json=self._role_body(role, resource_instance)
        )
        if status in (200, 201):
            logger.info(f"Role assigned: {role} on {resource_instance or self.tenant} -> {user_key}")
            return AssignmentResult(AssignmentStatus.CREATED, assignment)
        if status == 409:
            return AssignmentResult(AssignmentStatus.EXISTS, assignment)
        self._raise_for(status, body, "Assign role")

    async def unassign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        assignment = RoleAssignment(user_key, role, self.tenant, resource_instance)
        status, body = await self._request(
            "DELETE", self._facts(f"users/{user_key}/roles"), json=self._role_body(role, resource_instance)
        )
        if status in (200, 204):
            logger.info(f"Role unassigned: {role} on {resource_instance or self.tenant} -> {user_key}")
            return AssignmentResult(AssignmentStatus.REMOVED, assignment)
        if status == 404:
            return AssignmentResult(AssignmentStatus.ABSENT, assignment)
        self._raise_for(status, body, "Unassign role")

    async def list_resource_instances(self) -> List[ResourceInstance]:
        return [_parse_instance(item) for item in await self._list_pages("resource_instances", {})]

    async def check(self, user_key: str, action: str, resource_type: str) -> bool:
        payload = {
            "user": {"key": user_key},
            "action": action,
            "resource": {"type": resource_type, "tenant": self.tenant},
        }
        status, body = await self._request("POST", f"{self.pdp_url}/allowed", json=payload)
        if status != 200 or not isinstance(body, dict):
            self._raise_for(status, body, "Permission check")
        return bool(body.get("allow"))

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
