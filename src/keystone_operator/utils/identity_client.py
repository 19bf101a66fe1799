"""
Keystone identity API client utilities.

This module provides a narrow async interface to the Keystone v3 REST API
covering the entities a KeystoneService registers: services, projects,
users, roles and role assignments.

Every ``create_*`` call is create-if-absent: the entity is looked up by name
first and its existing ID returned when found, so repeating a call never
duplicates anything. Lookups that find nothing raise ``IdentityNotFoundError``
which callers treat as "does not exist yet".
"""

import asyncio
import logging
import ssl
import time
from typing import Any

import httpx

from keystone_operator.constants import (
    DEFAULT_DOMAIN,
    ENDPOINT_INTERNAL,
)
from keystone_operator.observability.metrics import metrics_collector

logger = logging.getLogger(__name__)

# Shared httpx clients, one per (endpoint, CA bundle) pair
_httpx_client_cache: dict[tuple[str, str | None], httpx.AsyncClient] = {}
_cache_lock = asyncio.Lock()


class IdentityClientError(Exception):
    """Error returned by the Keystone identity API or its transport."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_transient(self) -> bool:
        """Transport failures and server errors are worth retrying."""
        return self.status_code is None or self.status_code >= 500


class IdentityNotFoundError(IdentityClientError):
    """The requested identity entity does not exist."""

    def __init__(self, message: str, response_body: str | None = None) -> None:
        super().__init__(message, status_code=404, response_body=response_body)


class IdentityClient:
    """
    Client for the Keystone v3 identity API.

    Authenticates with a project-scoped password token and re-authenticates
    once when a request comes back 401.
    """

    def __init__(
        self,
        auth_url: str,
        username: str,
        password: str,
        project_name: str,
        user_domain: str = "Default",
        project_domain: str = "Default",
        region: str | None = None,
        ca_bundle: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the identity client.

        Args:
            auth_url: Base URL of the identity endpoint, without ``/v3``
            username: Admin user name
            password: Admin password
            project_name: Project the token is scoped to
            user_domain: Domain name of the admin user
            project_domain: Domain name of the scoping project
            region: Region name, informational only
            ca_bundle: PEM CA certificates trusted for the endpoint; the
                system trust store is used when unset
            timeout: Request timeout in seconds
            http_client: Preconfigured client, bypassing the shared cache
        """
        self.auth_url = auth_url.rstrip("/")
        self.username = username
        self.password = password
        self.project_name = project_name
        self.user_domain = user_domain
        self.project_domain = project_domain
        self.region = region
        self.ca_bundle = ca_bundle
        self.timeout = timeout
        self._http_client = http_client

        self.token: str | None = None
        self.token_expires_at: float | None = None

    def ssl_verify(self) -> ssl.SSLContext | bool:
        """TLS verification setting for the httpx client."""
        if self.ca_bundle:
            return ssl.create_default_context(cadata=self.ca_bundle)
        return True

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared httpx client for this endpoint."""
        if self._http_client is not None:
            return self._http_client

        cache_key = (self.auth_url, self.ca_bundle)
        async with _cache_lock:
            cached = _httpx_client_cache.get(cache_key)
            if cached is not None and not cached.is_closed:
                return cached

            client = httpx.AsyncClient(
                verify=self.ssl_verify(),
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
                headers={"Content-Type": "application/json"},
                follow_redirects=False,
            )
            _httpx_client_cache[cache_key] = client
            logger.debug(f"Created and cached httpx client for {self.auth_url}")
            return client

    async def authenticate(self) -> None:
        """Obtain a project-scoped token using the password method."""
        body = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": self.username,
                            "domain": {"name": self.user_domain},
                            "password": self.password,
                        }
                    },
                },
                "scope": {
                    "project": {
                        "name": self.project_name,
                        "domain": {"name": self.project_domain},
                    }
                },
            }
        }

        client = await self._get_client()
        try:
            response = await client.post(f"{self.auth_url}/v3/auth/tokens", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise IdentityClientError(
                f"Authentication failed: {e}",
                status_code=e.response.status_code,
                response_body=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            raise IdentityClientError(f"Authentication failed: {e}") from e

        self.token = response.headers.get("X-Subject-Token")
        # Keystone tokens default to one hour; refresh well before that
        self.token_expires_at = time.time() + 3000
        logger.debug(f"Authenticated against {self.auth_url} as {self.username}")

    async def _ensure_authenticated(self) -> None:
        if not self.token or (
            self.token_expires_at and time.time() >= self.token_expires_at
        ):
            await self.authenticate()

    async def _make_request(
        self,
        method: str,
        path: str,
        entity: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Make an authenticated request to the identity API.

        Args:
            method: HTTP method
            path: Path below ``/v3``
            entity: Entity kind for metrics and error messages
            json: JSON request body
            params: Query parameters

        Returns:
            The successful response

        Raises:
            IdentityNotFoundError: On 404
            IdentityClientError: On any other failure
        """
        await self._ensure_authenticated()

        url = f"{self.auth_url}/v3/{path.lstrip('/')}"
        client = await self._get_client()

        try:
            response = await client.request(
                method,
                url,
                json=json,
                params=params,
                headers={"X-Auth-Token": self.token or ""},
            )
            if response.status_code == 401:
                logger.warning("Received 401, attempting re-authentication")
                await self.authenticate()
                response = await client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers={"X-Auth-Token": self.token or ""},
                )
            metrics_collector.record_identity_request(
                method, entity, response.status_code
            )
            response.raise_for_status()
            return response

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            body = e.response.text
            if status_code == 404:
                raise IdentityNotFoundError(
                    f"{entity} not found: {method} {url}", response_body=body
                ) from e
            logger.error(
                f"Request failed: {method} {url} - {e}",
                extra={"http_status": status_code, "identity_entity": entity},
            )
            raise IdentityClientError(
                f"API request failed: {e}",
                status_code=status_code,
                response_body=body,
            ) from e

        except httpx.HTTPError as e:
            metrics_collector.record_identity_request(method, entity, "error")
            logger.error(f"Request failed: {method} {url} - {e}")
            raise IdentityClientError(f"API request failed: {e}") from e

    async def _find_one(
        self, collection: str, entity: str, **filters: str
    ) -> dict[str, Any]:
        """
        Look up exactly one entity of a collection by exact attribute match.

        Raises:
            IdentityNotFoundError: When nothing matches
        """
        response = await self._make_request(
            "GET", collection, entity, params={k: v for k, v in filters.items() if v}
        )
        matches = [
            item
            for item in response.json().get(collection, [])
            if all(item.get(k) == v for k, v in filters.items() if k != "domain_id")
        ]
        if not matches:
            description = ", ".join(f"{k}={v}" for k, v in filters.items())
            raise IdentityNotFoundError(f"{entity} not found ({description})")
        return matches[0]

    # Services

    async def get_service(self, service_type: str, service_name: str) -> dict[str, Any]:
        """
        Find a service by type and name.

        Raises:
            IdentityNotFoundError: When no such service is registered
        """
        return await self._find_one(
            "services", "service", type=service_type, name=service_name
        )

    async def create_service(
        self,
        service_type: str,
        service_name: str,
        description: str,
        enabled: bool = True,
    ) -> str:
        """Register a service and return its ID."""
        response = await self._make_request(
            "POST",
            "services",
            "service",
            json={
                "service": {
                    "type": service_type,
                    "name": service_name,
                    "description": description,
                    "enabled": enabled,
                }
            },
        )
        service_id = response.json()["service"]["id"]
        logger.info(f"Created service {service_type}/{service_name} ({service_id})")
        return service_id

    async def update_service(
        self,
        service_id: str,
        service_type: str,
        service_name: str,
        description: str,
        enabled: bool,
    ) -> None:
        await self._make_request(
            "PATCH",
            f"services/{service_id}",
            "service",
            json={
                "service": {
                    "type": service_type,
                    "name": service_name,
                    "description": description,
                    "enabled": enabled,
                }
            },
        )
        logger.info(f"Updated service {service_type}/{service_name} ({service_id})")

    async def delete_service(self, service_id: str) -> None:
        """Delete a service; one that is already gone counts as deleted."""
        try:
            await self._make_request("DELETE", f"services/{service_id}", "service")
        except IdentityNotFoundError:
            logger.debug(f"Service {service_id} already deleted")
            return
        logger.info(f"Deleted service {service_id}")

    # Projects

    async def create_project(
        self, name: str, description: str, domain_id: str = DEFAULT_DOMAIN
    ) -> str:
        """Ensure a project exists and return its ID."""
        try:
            project = await self._find_one(
                "projects", "project", name=name, domain_id=domain_id
            )
            return project["id"]
        except IdentityNotFoundError:
            pass

        response = await self._make_request(
            "POST",
            "projects",
            "project",
            json={
                "project": {
                    "name": name,
                    "description": description,
                    "domain_id": domain_id,
                }
            },
        )
        return response.json()["project"]["id"]

    # Users

    async def create_user(
        self,
        name: str,
        password: str,
        project_id: str,
        domain_id: str = DEFAULT_DOMAIN,
    ) -> str:
        """Ensure a user exists and return its ID."""
        try:
            user = await self._find_one("users", "user", name=name, domain_id=domain_id)
            return user["id"]
        except IdentityNotFoundError:
            pass

        response = await self._make_request(
            "POST",
            "users",
            "user",
            json={
                "user": {
                    "name": name,
                    "password": password,
                    "default_project_id": project_id,
                    "domain_id": domain_id,
                }
            },
        )
        user_id = response.json()["user"]["id"]
        logger.info(f"Created user {name} ({user_id})")
        return user_id

    async def delete_user(self, name: str, domain_id: str = DEFAULT_DOMAIN) -> None:
        """Delete a user by name; a missing user counts as deleted."""
        try:
            user = await self._find_one("users", "user", name=name, domain_id=domain_id)
            await self._make_request("DELETE", f"users/{user['id']}", "user")
        except IdentityNotFoundError:
            logger.debug(f"User {name} already deleted")
            return
        logger.info(f"Deleted user {name}")

    # Roles

    async def create_role(self, name: str) -> str:
        """Ensure a role exists and return its ID."""
        try:
            role = await self._find_one("roles", "role", name=name)
            return role["id"]
        except IdentityNotFoundError:
            pass

        response = await self._make_request(
            "POST", "roles", "role", json={"role": {"name": name}}
        )
        return response.json()["role"]["id"]

    async def assign_user_role(
        self, role_name: str, user_id: str, project_id: str
    ) -> None:
        """Ensure ``user_id`` holds ``role_name`` on ``project_id``."""
        role = await self._find_one("roles", "role", name=role_name)
        path = f"projects/{project_id}/users/{user_id}/roles/{role['id']}"
        try:
            await self._make_request("HEAD", path, "role_assignment")
            return
        except IdentityNotFoundError:
            pass
        await self._make_request("PUT", path, "role_assignment")
        logger.info(f"Granted role {role_name} to user {user_id} on {project_id}")


async def get_admin_identity_client(
    keystone_api: dict[str, Any],
    admin_password: str,
    timeout: float = 30.0,
    ca_bundle: str | None = None,
) -> IdentityClient | None:
    """
    Build an admin client for a KeystoneAPI.

    Args:
        keystone_api: The KeystoneAPI object
        admin_password: Password of the admin user
        timeout: Request timeout in seconds
        ca_bundle: PEM CA bundle from the KeystoneAPI caBundleSecretName, if
            one is configured

    Returns:
        A client pointed at the internal endpoint, or None when the
        KeystoneAPI has not published its endpoints yet
    """
    endpoints = keystone_api.get("status", {}).get("apiEndpoints") or {}
    auth_url = endpoints.get(ENDPOINT_INTERNAL)
    if not auth_url:
        return None

    spec = keystone_api.get("spec", {})
    return IdentityClient(
        auth_url=auth_url,
        username=spec.get("adminUser", "admin"),
        password=admin_password,
        project_name=spec.get("adminProject", "admin"),
        region=spec.get("region"),
        ca_bundle=ca_bundle,
        timeout=timeout,
    )
