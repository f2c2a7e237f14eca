"""Proving collaborator interface, receipts and an in-process dev prover.

A program is addressed by its image id.  Running it on an input yields a
:class:`Receipt` whose journal is the program's committed public output.
Receipts of earlier runs can be handed to a later run as *assumptions*;
the later program calls :meth:`ProgramEnv.verify` to assert an earlier
claim without recomputing it.

``LocalProver`` executes registered programs in-process and seals the
receipts with a SHA-256 digest (no zero-knowledge).  ``HttpProvingClient``
talks to a remote proving service over HTTP.

Usage::

    prover = LocalProver(registry)
    receipt = prover.generate(image_id, payload)
    prover.verify(receipt, image_id)
    output = receipt.public_output()
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx

from reserve_engine.errors import AssumptionNotFound, ExternalProvingFailure

LOGGER = logging.getLogger(__name__)

DEV_SEAL_PREFIX = "dev"


def canonical_json(obj: Any) -> str:
    """Stable JSON text: sorted keys, no whitespace, floats via repr."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), allow_nan=False)


def claim_digest(image_id: str, journal: Any) -> str:
    return hashlib.sha256(f"{image_id}:{canonical_json(journal)}".encode("utf-8")).hexdigest()


def input_digest(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Receipt
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Receipt:
    """Attestation that ``image_id`` committed ``journal``."""

    image_id: str
    journal: str  # canonical JSON
    seal: str
    assumptions: Tuple[str, ...] = ()

    @property
    def claim(self) -> str:
        return hashlib.sha256(f"{self.image_id}:{self.journal}".encode("utf-8")).hexdigest()

    def public_output(self) -> Any:
        return json.loads(self.journal)

    def verify(self, image_id: str) -> None:
        """Structural check; dev seals are recomputed, remote seals are opaque."""
        if self.image_id != image_id:
            raise ExternalProvingFailure(
                f"receipt is for image {self.image_id}, expected {image_id}", retryable=False,
            )
        if self.seal.startswith(DEV_SEAL_PREFIX + ":") and self.seal != _dev_seal(self.claim, self.assumptions):
            raise ExternalProvingFailure("receipt seal does not match its claim", retryable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_id": self.image_id,
            "journal": self.journal,
            "seal": self.seal,
            "assumptions": list(self.assumptions),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Receipt":
        return cls(
            image_id=str(data["image_id"]),
            journal=str(data["journal"]),
            seal=str(data["seal"]),
            assumptions=tuple(str(a) for a in data.get("assumptions", ())),
        )


def _dev_seal(claim: str, assumptions: Sequence[str]) -> str:
    body = hashlib.sha256(f"{claim}|{','.join(assumptions)}".encode("utf-8")).hexdigest()
    return f"{DEV_SEAL_PREFIX}:{body}"


# ---------------------------------------------------------------------------
# Program environment
# ---------------------------------------------------------------------------


@dataclass
class ProgramEnv:
    """What a running program sees: its input, assumptions and journal."""

    payload: Any
    assumptions: Dict[str, Receipt] = field(default_factory=dict)
    journal: Any = None
    used: List[str] = field(default_factory=list)

    def read(self) -> Any:
        return self.payload

    def verify(self, image_id: str, journal: Any) -> None:
        """Assert that an assumption committed exactly ``journal``."""
        digest = claim_digest(image_id, journal)
        if digest not in self.assumptions:
            raise AssumptionNotFound(f"no assumption for image {image_id} with claim {digest[:12]}")
        self.used.append(digest)

    def commit(self, journal: Any) -> None:
        self.journal = journal


class Program(Protocol):
    image_id: str

    def run(self, env: ProgramEnv) -> None: ...


class ProgramRegistry(Protocol):
    def program(self, image_id: str) -> Program: ...


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class ProvingClient(Protocol):
    """Blocking proving collaborator."""

    def generate(
        self,
        image_id: str,
        payload: Any,
        assumptions: Sequence[Receipt] = (),
    ) -> Receipt: ...

    def verify(self, receipt: Receipt, image_id: str) -> None: ...


class LocalProver:
    """Runs registered programs in-process and seals receipts with SHA-256."""

    def __init__(self, registry: ProgramRegistry) -> None:
        self._registry = registry

    def generate(
        self,
        image_id: str,
        payload: Any,
        assumptions: Sequence[Receipt] = (),
    ) -> Receipt:
        program = self._registry.program(image_id)
        for assumption in assumptions:
            assumption.verify(assumption.image_id)
        env = ProgramEnv(payload=payload, assumptions={r.claim: r for r in assumptions})
        program.run(env)
        if env.journal is None:
            raise ExternalProvingFailure(f"program {image_id} committed no output", retryable=False)
        journal = canonical_json(env.journal)
        used = tuple(env.used)
        claim = hashlib.sha256(f"{image_id}:{journal}".encode("utf-8")).hexdigest()
        return Receipt(image_id=image_id, journal=journal, seal=_dev_seal(claim, used), assumptions=used)

    def verify(self, receipt: Receipt, image_id: str) -> None:
        receipt.verify(image_id)


@dataclass(frozen=True)
class HttpProverConfig:
    """Remote proving service.

    Parameters
    ----------
    base_url:
        Service root, e.g. ``http://prover:8080``.
    timeout_seconds:
        Per-request timeout; generation can take minutes. Default 900.
    api_key:
        Optional bearer token.
    """

    base_url: str
    timeout_seconds: float = 900.0
    api_key: Optional[str] = None


class HttpProvingClient:
    """``ProvingClient`` over HTTP (``POST /generate``, ``POST /verify``)."""

    def __init__(self, config: HttpProverConfig, transport: httpx.BaseTransport | None = None) -> None:
        self._config = config
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers=headers,
            transport=transport,
        )

    @property
    def config(self) -> HttpProverConfig:
        return self._config

    def close(self) -> None:
        self._client.close()

    def generate(
        self,
        image_id: str,
        payload: Any,
        assumptions: Sequence[Receipt] = (),
    ) -> Receipt:
        body = {
            "image_id": image_id,
            "input": payload,
            "assumptions": [r.to_dict() for r in assumptions],
        }
        data = self._post("/generate", body)
        receipt = Receipt.from_dict(data)
        if receipt.image_id != image_id:
            raise ExternalProvingFailure(
                f"service returned a receipt for {receipt.image_id}, expected {image_id}",
                retryable=False,
            )
        return receipt

    def verify(self, receipt: Receipt, image_id: str) -> None:
        receipt.verify(image_id)
        data = self._post("/verify", {"image_id": image_id, "receipt": receipt.to_dict()})
        if not data.get("valid", False):
            raise ExternalProvingFailure(
                f"service rejected receipt: {data.get('error', 'invalid')}", retryable=False,
            )

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(path, content=canonical_json(body))
        except httpx.TransportError as exc:
            raise ExternalProvingFailure(f"error sending request to {path}: {exc}", retryable=True) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ExternalProvingFailure(
                f"{path} returned {response.status_code}: {response.text[:200]}", retryable=True,
            )
        if response.status_code >= 400:
            raise ExternalProvingFailure(
                f"{path} returned {response.status_code}: {response.text[:200]}", retryable=False,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalProvingFailure(f"{path} returned invalid JSON", retryable=False) from exc
