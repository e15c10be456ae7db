import logging
from decimal import Decimal

import requests
from requests.exceptions import RequestException

from config_models import PaymongoConfig

logger = logging.getLogger(__name__)

VALID_SOURCE_TYPES = {"gcash", "grab_pay"}


class PaymongoError(Exception):
    """Exception raised for PayMongo API errors."""

    pass


def to_centavos(amount) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


def from_centavos(value) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(Decimal("0.01"))


class PaymongoClient:
    def __init__(self, config: PaymongoConfig):
        self.config = config

    def _post(self, path: str, attributes: dict) -> dict:
        if not self.config.enabled or not self.config.secret_key:
            raise PaymongoError("PayMongo is not configured")
        url = f"{self.config.base_url}{path}"
        try:
            response = requests.post(
                url,
                auth=(self.config.secret_key, ""),
                json={"data": {"attributes": attributes}},
                timeout=30,
            )
            response.raise_for_status()
            return response.json()["data"]
        except requests.exceptions.Timeout as e:
            logger.error("Timeout calling PayMongo %s", path)
            raise PaymongoError("Connection to PayMongo timed out") from e
        except requests.exceptions.HTTPError as e:
            logger.error("PayMongo error on %s: %s", path, e)
            raise PaymongoError(f"PayMongo API error: {e}") from e
        except RequestException as e:
            logger.error("PayMongo request failed on %s: %s", path, e)
            raise PaymongoError(f"Request to PayMongo failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise PaymongoError(f"Unexpected PayMongo response: {e}") from e

    def create_source(self, amount, source_type: str, success_url: str, failed_url: str) -> dict:
        """Create a payment source (e-wallet checkout).

        Args:
            amount: Amount in pesos.
            source_type: ``gcash`` or ``grab_pay``.
            success_url: Redirect after successful authorisation.
            failed_url: Redirect after failed authorisation.

        Returns:
            Dict with ``id``, ``checkout_url`` and ``status``.

        Raises:
            PaymongoError: On invalid input or API failure.
        """
        if source_type not in VALID_SOURCE_TYPES:
            raise PaymongoError(f"Unsupported source type: {source_type}")
        data = self._post("/sources", {
            "amount": to_centavos(amount),
            "redirect": {"success": success_url, "failed": failed_url},
            "type": source_type,
            "currency": "PHP",
        })
        attributes = data.get("attributes", {})
        logger.info("Created PayMongo source %s", data.get("id"))
        return {
            "id": data.get("id"),
            "checkout_url": attributes.get("redirect", {}).get("checkout_url"),
            "status": attributes.get("status"),
        }

    def create_payment(self, source_id: str, amount, description: str) -> dict:
        """Charge a chargeable source.

        Returns:
            Dict with ``id``, ``status`` and ``amount`` (pesos, Decimal).
        """
        data = self._post("/payments", {
            "amount": to_centavos(amount),
            "currency": "PHP",
            "description": description,
            "source": {"id": source_id, "type": "source"},
        })
        attributes = data.get("attributes", {})
        logger.info("Created PayMongo payment %s (%s)", data.get("id"), attributes.get("status"))
        return {
            "id": data.get("id"),
            "status": attributes.get("status"),
            "amount": from_centavos(attributes.get("amount", 0)),
        }
