import logging
from typing import Optional

import requests
from librouteros import connect
from librouteros.exceptions import LibRouterosError
from requests.exceptions import RequestException

from config_models import MikrotikConfig

logger = logging.getLogger(__name__)


class MikrotikError(Exception):
    """Exception raised for MikroTik router errors."""

    pass


class MikrotikClient:
    """RouterOS client: REST API first, binary API (port 8728) as fallback."""

    def __init__(self, config: MikrotikConfig):
        self.config = config
        self._rest_base: Optional[str] = None

    # ------------------------------------------------------------------
    # REST transport
    # ------------------------------------------------------------------

    def _rest_urls(self) -> list[str]:
        host = self.config.host
        if self._rest_base:
            return [self._rest_base]
        return [
            f"http://{host}:{self.config.port}/rest",
            f"https://{host}/rest",
        ]

    def _rest(self, method: str, path: str, payload: Optional[dict] = None, params: Optional[dict] = None):
        """Call the RouterOS REST API, trying HTTP then HTTPS.

        Args:
            method: HTTP method.
            path: Resource path such as ``/ppp/secret``.
            payload: JSON body for PUT/PATCH.
            params: Query parameters for GET.

        Returns:
            Decoded JSON response (list or dict).

        Raises:
            MikrotikError: If every REST endpoint fails.
        """
        last_error: Optional[Exception] = None
        for base in self._rest_urls():
            url = f"{base}{path}"
            try:
                response = requests.request(
                    method,
                    url,
                    auth=(self.config.user, self.config.password),
                    json=payload,
                    params=params,
                    timeout=self.config.timeout,
                    verify=False,
                )
                response.raise_for_status()
                self._rest_base = base
                return response.json() if response.content else {}
            except requests.exceptions.Timeout as e:
                logger.warning("MikroTik REST timeout at %s", base)
                last_error = e
            except requests.exceptions.ConnectionError as e:
                logger.warning("MikroTik REST connection error at %s", base)
                last_error = e
            except requests.exceptions.HTTPError as e:
                # Reached the router; a different scheme will not help.
                logger.error("MikroTik REST error %s %s: %s", method, path, e)
                raise MikrotikError(f"MikroTik API error: {e}") from e
            except (RequestException, ValueError) as e:
                logger.warning("MikroTik REST request failed at %s: %s", base, e)
                last_error = e
        raise MikrotikError(f"Could not reach MikroTik REST API: {last_error}")

    # ------------------------------------------------------------------
    # Binary API transport
    # ------------------------------------------------------------------

    def _api(self):
        try:
            return connect(
                username=self.config.user,
                password=self.config.password,
                host=self.config.host,
                port=self.config.api_port,
                timeout=self.config.timeout,
            )
        except (LibRouterosError, OSError) as e:
            logger.error("MikroTik API connection to %s failed: %s", self.config.host, e)
            raise MikrotikError(f"Could not connect to MikroTik API: {e}") from e

    def _api_update_secret(self, name: str, changes: dict) -> None:
        api = self._api()
        try:
            secrets = api.path("ppp", "secret")
            match = next((item for item in secrets if item.get("name") == name), None)
            if match is None:
                raise MikrotikError(f"PPP secret '{name}' not found")
            secrets.update(**{".id": match[".id"], **changes})
        except LibRouterosError as e:
            raise MikrotikError(f"MikroTik API error: {e}") from e
        finally:
            api.close()

    def _api_add_secret(self, account: dict) -> None:
        api = self._api()
        try:
            api.path("ppp", "secret").add(**account)
        except LibRouterosError as e:
            raise MikrotikError(f"MikroTik API error: {e}") from e
        finally:
            api.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _find_secret_id(self, name: str) -> str:
        found = self._rest("GET", "/ppp/secret", params={"name": name})
        if not found:
            raise MikrotikError(f"PPP secret '{name}' not found")
        return found[0][".id"]

    def _update_secret(self, name: str, changes: dict) -> None:
        try:
            secret_id = self._find_secret_id(name)
            self._rest("PATCH", f"/ppp/secret/{secret_id}", payload=changes)
        except MikrotikError as e:
            logger.info("REST update of '%s' failed (%s), trying binary API", name, e)
            self._api_update_secret(name, changes)

    def update_profile(self, account_name: str, changes: dict) -> bool:
        """Change attributes (typically ``profile``) of a PPP account.

        Raises:
            MikrotikError: If neither transport succeeds.
        """
        logger.info("Updating MikroTik account %s: %s", account_name, sorted(changes))
        self._update_secret(account_name, dict(changes))
        return True

    def set_disabled(self, account_name: str, disabled: bool) -> bool:
        logger.info("Setting MikroTik account %s disabled=%s", account_name, disabled)
        self._update_secret(account_name, {"disabled": "yes" if disabled else "no"})
        return True

    def add_account(self, account: dict) -> bool:
        """Create a PPP account.

        Args:
            account: ``name``, ``password``, ``service``, ``profile`` and
                optional ``comment``.
        """
        if not account.get("name"):
            raise MikrotikError("PPP account name is required")
        payload = {k: v for k, v in account.items() if v not in (None, "")}
        logger.info("Creating MikroTik account %s", payload["name"])
        try:
            self._rest("PUT", "/ppp/secret", payload=payload)
        except MikrotikError as e:
            logger.info("REST create of '%s' failed (%s), trying binary API", payload["name"], e)
            self._api_add_secret(payload)
        return True

    def get_overview(self) -> dict:
        """Return system resources, interfaces, IP addresses and DHCP leases."""
        return {
            "resources": self._rest("GET", "/system/resource"),
            "interfaces": self._rest("GET", "/interface"),
            "addresses": self._rest("GET", "/ip/address"),
            "leases": self._rest("GET", "/ip/dhcp-server/lease"),
        }

    def check_connection(self) -> bool:
        self._rest("GET", "/system/identity")
        return True
