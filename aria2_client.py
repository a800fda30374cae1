# aria2_client.py
# ARIA2 JSON-RPC CLIENT
# Version: 1.0.0

"""
ARIA2 JSON-RPC CLIENT
=====================
Minimal client for the aria2 RPC interface, used as the download
engine: ``submit`` adds a download by URI list, ``poll`` reads its
status back.
"""

import random
from typing import Any, Dict, List, Optional

import requests

from ct2aria_core import JobStatus

DEFAULT_ENDPOINT = "http://127.0.0.1:6800/jsonrpc"

# Connection Timeout
RPC_TIMEOUT = 15

# Keys requested from aria2.tellStatus when polling
POLL_KEYS = ["gid", "status", "errorCode", "errorMessage"]


class Aria2Error(Exception):
    """Error object returned by the aria2 RPC server."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class Aria2Client:
    """
    Thin JSON-RPC client over a requests session.

    When a secret is configured it is sent as ``token:<secret>`` in front
    of every parameter list.
    """

    def __init__(self, endpoint: str = DEFAULT_ENDPOINT, secret: str = "",
                 session: Optional[requests.Session] = None, timeout: float = RPC_TIMEOUT):
        self.endpoint = endpoint
        self.secret = secret
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, method: str, params: List[Any]) -> Any:
        """
        Perform one RPC call.

        Args:
            method: RPC method name, e.g. ``aria2.addUri``
            params: Positional parameters (without the token)

        Returns:
            The ``result`` member of the response

        Raises:
            Aria2Error: on an RPC error object or a null result
            requests.RequestException: on transport failures
        """
        args: List[Any] = []
        if self.secret:
            args.append(f"token:{self.secret}")
        args.extend(params)
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": args,
            "id": str(random.getrandbits(63)),
        }
        response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise Aria2Error(-1, f"invalid response from {self.endpoint}")

        error = data.get("error")
        if error:
            raise Aria2Error(int(error.get("code", -1)), error.get("message", ""))
        if data.get("result") is None:
            raise Aria2Error(-1, "Unexpected null result")
        return data["result"]

    def add_uri(self, uris: List[str], options: Optional[Dict[str, str]] = None) -> str:
        """
        Add a new download.

        Args:
            uris: URIs pointing to the same resource
            options: aria2 options, e.g. ``{"out": ..., "dir": ...}``

        Returns:
            GID of the new download
        """
        return self._call("aria2.addUri", [list(uris), dict(options or {})])

    def tell_status(self, gid: str, keys: Optional[List[str]] = None) -> Dict[str, Any]:
        params: List[Any] = [gid]
        if keys:
            params.append(list(keys))
        return self._call("aria2.tellStatus", params)

    # ===== ENGINE INTERFACE =====
    def submit(self, uris: List[str], options: Dict[str, str]) -> str:
        return self.add_uri(uris, options)

    def poll(self, gid: str) -> JobStatus:
        status = self.tell_status(gid, POLL_KEYS)
        return JobStatus(status=status.get("status", ""), error_message=status.get("errorMessage", ""))
