"""GraphQL client for the loan event indexing service."""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib import error, request

from pydantic import ValidationError

from deployer.models.exceptions import IndexerError
from deployer.models.loans import LoanRequestedEvent, ProtocolConfigSnapshot


logger = logging.getLogger(__name__)

_LOAN_FIELDS = """
    loanId
    borrower
    principal
    duration
    interestRateBps
    adminFee
    slot
    transactionSignature
"""

LOAN_REQUESTED_QUERY = "query GetLoans { loanRequested {" + _LOAN_FIELDS + "} }"
LOAN_BY_ID_QUERY = (
    "query GetLoanById($loanId: String!) { loanRequested(where: { loanId: { _eq: $loanId } }) {"
    + _LOAN_FIELDS
    + "} }"
)
LOANS_BY_BORROWER_QUERY = (
    "query GetLoansByBorrower($borrower: String!) { loanRequested(where: { borrower: { _eq: $borrower } }) {"
    + _LOAN_FIELDS
    + "} }"
)
RECENT_LOANS_QUERY = (
    "query GetRecentLoans($limit: Int!) { loanRequested(order_by: { slot: desc }, limit: $limit) {"
    + _LOAN_FIELDS
    + "} }"
)
PROTOCOL_CONFIG_QUERY = """
query GetProtocolConfig {
  protocolConfig {
    admin
    deployer
    treasury
    loanCounter
    totalDeposits
    totalLoansOutstanding
    totalYieldDistributed
    isPaused
    slot
  }
}
"""


def _to_event(row: Dict[str, Any]) -> LoanRequestedEvent:
    payload = dict(row)
    payload["txRef"] = payload.pop("transactionSignature", None)
    return LoanRequestedEvent.model_validate(payload)


class IndexerClient:
    """Send GraphQL queries to the indexing service and parse loan events."""

    def __init__(self, endpoint: str, timeout_sec: int = 15) -> None:
        self._endpoint = endpoint
        self._timeout_sec = timeout_sec

    def _post_graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a GraphQL POST and return its `data` object."""
        body = json.dumps({"query": query, "variables": variables or {}}).encode("utf-8")
        req = request.Request(
            url=self._endpoint,
            data=body,
            method="POST",
            headers={
                "User-Agent": "ProgramLoanDeployer/1.0",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self._timeout_sec) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            raise IndexerError("Indexer request failed with status={0}".format(exc.code)) from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise IndexerError("Indexer unreachable: {0}".format(exc)) from exc
        except json.JSONDecodeError as exc:
            raise IndexerError("Indexer returned invalid JSON") from exc

        if payload.get("errors"):
            raise IndexerError("Indexer query errors: {0}".format(payload["errors"]))
        data = payload.get("data")
        if not isinstance(data, dict):
            raise IndexerError("Invalid response structure from indexer")
        return data

    async def _query_loans(self, query: str, variables: Optional[Dict[str, Any]] = None) -> List[LoanRequestedEvent]:
        data = await asyncio.to_thread(self._post_graphql, query, variables)
        rows = data.get("loanRequested")
        if not isinstance(rows, list):
            raise IndexerError("Invalid loanRequested payload from indexer")
        events: List[LoanRequestedEvent] = []
        for row in rows:
            try:
                events.append(_to_event(row))
            except ValidationError:
                logger.warning("Skipping malformed loan event row=%s", row)
        return events

    async def fetch_loan_requests(self) -> List[LoanRequestedEvent]:
        """Return every loan-request event known to the indexer."""
        return await self._query_loans(LOAN_REQUESTED_QUERY)

    async def fetch_loan_by_id(self, loan_id: str) -> Optional[LoanRequestedEvent]:
        events = await self._query_loans(LOAN_BY_ID_QUERY, {"loanId": loan_id})
        return events[0] if events else None

    async def fetch_loans_by_borrower(self, borrower: str) -> List[LoanRequestedEvent]:
        return await self._query_loans(LOANS_BY_BORROWER_QUERY, {"borrower": borrower})

    async def fetch_recent_loans(self, limit: int = 10) -> List[LoanRequestedEvent]:
        return await self._query_loans(RECENT_LOANS_QUERY, {"limit": limit})

    async def fetch_protocol_config(self) -> Optional[ProtocolConfigSnapshot]:
        """Return the protocol config row with the highest slot."""
        data = await asyncio.to_thread(self._post_graphql, PROTOCOL_CONFIG_QUERY, None)
        rows = data.get("protocolConfig")
        if not isinstance(rows, list) or not rows:
            return None
        latest = max(rows, key=lambda row: int(row.get("slot") or 0))
        payload = dict(latest)
        if "isPaused" in payload:
            payload["isPaused"] = bool(int(payload["isPaused"] or 0))
        return ProtocolConfigSnapshot.model_validate(payload)
