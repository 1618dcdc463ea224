"""Causal event graph kept in memory and committed to Dgraph over HTTP."""

from __future__ import annotations

import json
import logging
import threading
from datetime import timedelta
from typing import Any, Iterable, Optional, Union

import httpx

from chronomesh.models import Event, ParentRef

log = logging.getLogger(__name__)

SCHEMA = """
id: string @index(exact) .
name: string .
clock: string .
depth: int .
value: string .
key: string .
node: string .
parent: [uid] .
type Event {
    id
    name
    clock
    depth
    parent
    value
    key
    node
}
"""

_default_client: Optional[DgraphClient] = None


class EventGraphError(Exception):
    """Raised when the graph cannot be stored in Dgraph."""


def vector_clock_to_string(clock: Optional[dict[int, int]]) -> str:
    """Render a vector clock as compact JSON with keys sorted as strings."""
    if clock is None:
        return "null"
    ordered = sorted(((str(k), v) for k, v in clock.items()), key=lambda kv: kv[0])
    return json.dumps(dict(ordered), separators=(",", ":"))


class DgraphClient:
    """Minimal client for the Dgraph HTTP endpoints."""

    def __init__(
        self,
        address: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        base = address if "://" in address else f"http://{address}"
        self.address = base.rstrip("/")
        self._http = httpx.Client(base_url=self.address, timeout=timeout, transport=transport)

    def _post(self, path: str, payload: Any, params: Optional[dict[str, str]] = None) -> Any:
        content = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        try:
            response = self._http.post(
                path,
                content=content,
                params=params,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise EventGraphError(f"request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise EventGraphError(
                f"request to {path} failed with status {response.status_code}: {response.text}"
            )
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("errors"):
            errors = body["errors"]
            first = errors[0] if isinstance(errors, list) and errors else errors
            detail = first.get("message", first) if isinstance(first, dict) else first
            raise EventGraphError(f"request to {path} failed: {detail}")
        return body

    def alter_schema(self) -> None:
        """Install the event schema."""
        try:
            self._post("/alter", {"schema": SCHEMA})
        except EventGraphError as exc:
            raise EventGraphError(f"failed to set schema: {exc}") from exc

    def mutate(self, events: Iterable[Event]) -> None:
        """Store the given events in one committed transaction."""
        payload = {"set": [event.to_dict() for event in events]}
        try:
            self._post("/mutate", payload, params={"commitNow": "true"})
        except EventGraphError as exc:
            raise EventGraphError(f"failed to commit events to Dgraph: {exc}") from exc

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> DgraphClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def init_dgraph(address: str) -> DgraphClient:
    """Connect to Dgraph, install the schema and make it the default connection."""
    global _default_client
    client = DgraphClient(address)
    try:
        client.alter_schema()
    except EventGraphError:
        client.close()
        raise
    _default_client = client
    log.info("Connected to Dgraph and schema set successfully")
    return client


class EventGraph:
    """Pending causal events of one node, committed to Dgraph in batches."""

    def __init__(self, node_id: int, node_addr: str, client: Optional[DgraphClient] = None) -> None:
        self.events: list[Event] = []
        self.uid_map: dict[str, str] = {}
        self.depth = 0
        self.node_id = node_id
        self.node_addr = node_addr
        self.client = client
        self._lock = threading.RLock()

    def add_event(
        self,
        name: str,
        key: str,
        value: str,
        clock: Optional[dict[int, int]],
        parent_ids: Optional[Iterable[str]],
    ) -> str:
        """Add an event and return its id; parents unknown to the graph are dropped."""
        with self._lock:
            self.depth += 1
            event_id = f"e{self.node_id}_{self.depth}"
            event_uid = f"_:{name}_{key}_{value}_{self.depth}"

            for existing_id, uid in self.uid_map.items():
                if event_uid in uid:
                    return existing_id

            parents = [
                ParentRef(uid=self.uid_map[parent_id])
                for parent_id in parent_ids or ()
                if parent_id in self.uid_map
            ]
            self.events.append(
                Event(
                    uid=event_uid,
                    id=event_id,
                    name=name,
                    clock=vector_clock_to_string(clock),
                    depth=self.depth,
                    parent=parents,
                    key=key,
                    value=value,
                    node=self.node_addr,
                )
            )
            self.uid_map[event_id] = event_uid
            return event_id

    def commit_to_graph(self) -> None:
        """Send every pending event to Dgraph and clear the pending list."""
        with self._lock:
            if not self.events:
                return
            client = self.client or _default_client
            if client is None:
                raise EventGraphError("no Dgraph connection; call init_dgraph first")
            client.mutate(self.events)
            self.events = []
        log.info("Chrono event graph committed to Dgraph")

    def start_auto_commit(self, interval: Union[float, timedelta]) -> threading.Event:
        """Commit every ``interval`` seconds until the returned event is set."""
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        done = threading.Event()

        def run() -> None:
            while not done.wait(seconds):
                try:
                    self.commit_to_graph()
                except EventGraphError as exc:
                    log.error("Auto-commit error: %s", exc)

        threading.Thread(target=run, name=f"eventgraph-commit-{self.node_id}", daemon=True).start()
        return done