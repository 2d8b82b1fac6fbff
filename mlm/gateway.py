import hashlib
import logging
import secrets
from decimal import Decimal
from typing import Dict, Any, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


logger = logging.getLogger(__name__)


class PayoutGatewayError(Exception):
    pass


class PayoutGateway:
    """
    Disburses queued payouts. With no API URL configured it runs in simulated
    mode and succeeds immediately.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: int = 15):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout
        self._session = None

    @classmethod
    def from_config(cls, config) -> "PayoutGateway":
        return cls(
            base_url=config.get("PAYOUT_API_URL"),
            api_key=config.get("PAYOUT_API_KEY"),
            timeout=config.get("PAYOUT_API_TIMEOUT", 15),
        )

    @property
    def simulated(self) -> bool:
        return not self.base_url

    def _get_session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["POST"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            self._session = session
        return self._session

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self._get_session().post(
                f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise PayoutGatewayError(f"Payout API timeout after {self.timeout} seconds")
        except requests.exceptions.ConnectionError:
            raise PayoutGatewayError("Payout API connection error")

        if response.status_code != 200:
            raise PayoutGatewayError(f"API error: {response.status_code} - {response.text[:200]}")

        data = response.json()
        if not data.get("success", False):
            raise PayoutGatewayError(data.get("error") or "Payout rejected by gateway")
        return data

    @staticmethod
    def _simulated_hash(reference: str) -> str:
        return "0x" + hashlib.sha256(f"{reference}:{secrets.token_hex(8)}".encode()).hexdigest()

    def send_usdt(self, wallet_address: str, amount: Decimal, reference: str) -> str:
        """Returns the on-chain transaction hash."""
        if self.simulated:
            tx_hash = self._simulated_hash(reference)
            logger.info(f"[SIMULATED] USDT {amount} to {wallet_address} - {tx_hash}")
            return tx_hash
        data = self._post("/payouts/usdt", {
            "address": wallet_address,
            "amount": str(amount),
            "network": "BEP20",
            "reference": reference,
        })
        tx_hash = data.get("transactionHash")
        if not tx_hash:
            raise PayoutGatewayError("Gateway returned no transaction hash")
        return tx_hash

    def convert_funds(self, bank_details: Dict[str, Any], amount: Decimal, reference: str) -> bool:
        if self.simulated:
            logger.info(f"[SIMULATED] Fund conversion {amount} to {bank_details.get('bankName')} - {reference}")
            return True
        self._post("/payouts/bank", {"bank": bank_details, "amount": str(amount), "reference": reference})
        return True

    def send_p2p(self, p2p_details: Dict[str, Any], amount: Decimal, reference: str) -> bool:
        if self.simulated:
            logger.info(f"[SIMULATED] P2P {amount} to {p2p_details.get('recipientCode')} - {reference}")
            return True
        self._post("/payouts/p2p", {"recipient": p2p_details, "amount": str(amount), "reference": reference})
        return True

    def disburse(self, withdrawal) -> Tuple[bool, Optional[str]]:
        """Dispatch by withdrawal method. Returns (success, transaction_hash)."""
        amount = Decimal(withdrawal.net_amount)
        if withdrawal.method == "usdt_bep20":
            return True, self.send_usdt(withdrawal.wallet_address, amount, withdrawal.reference)
        if withdrawal.method == "fund_conversion":
            return self.convert_funds(withdrawal.bank_details or {}, amount, withdrawal.reference), None
        if withdrawal.method == "p2p":
            return self.send_p2p(withdrawal.p2p_details or {}, amount, withdrawal.reference), None
        raise PayoutGatewayError(f"Unsupported payout method: {withdrawal.method}")
