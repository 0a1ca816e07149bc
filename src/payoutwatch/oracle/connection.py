"""
payoutwatch/oracle/connection.py

Low-level HTTP transport for the ledger's JSON-RPC endpoint.
"""

import json
import logging
from typing import Optional

import requests

logger = logging.getLogger("payoutwatch.oracle.connection")


class RPCConnection:
    """
    Posts JSON-RPC requests to a single HTTP endpoint.

    Every request carries a bounded timeout; a timed-out request is
    reported the same way as any other transport failure.
    """

    DEFAULT_TIMEOUT = 30  # seconds

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize connection parameters.

        Args:
            url: JSON-RPC endpoint URL
            timeout: Request timeout in seconds
            session: Optional requests session (shared connection pool)
        """
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self.last_error: Optional[str] = None

    def post(self, data: dict) -> Optional[dict]:
        """
        Send a JSON-RPC request and return the decoded response.

        Args:
            data: Request body

        Returns:
            Parsed JSON response, or None on transport, status or decode failure
            (the reason is kept in ``last_error``)
        """
        self.last_error = None
        try:
            response = self._session.post(
                self.url,
                data=json.dumps(data),
                headers={"content-type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            self.last_error = f"Request timed out after {self.timeout}s"
            logger.warning(f"RPC timeout: {self.url}")
            return None
        except requests.RequestException as e:
            self.last_error = f"Request failed: {e}"
            logger.warning(f"RPC request failed: {e}")
            return None

        if response.status_code != 200:
            self.last_error = f"API request failed! Status: {response.status_code}"
            logger.warning(f"RPC endpoint returned {response.status_code}")
            return None

        try:
            return response.json()
        except ValueError as e:
            self.last_error = f"Invalid JSON response: {e}"
            logger.error(f"Invalid JSON response: {e}")
            return None

    def close(self) -> None:
        """Close the underlying session."""
        self._session.close()

    def __enter__(self) -> "RPCConnection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
