"""Tests for receipts, the in-process prover and the HTTP proving client."""

from __future__ import annotations

import json
from typing import Any, Dict

import httpx
import pytest

from reserve_engine.errors import AssumptionNotFound, ExternalProvingFailure
from reserve_engine.framework.prover import (
    HttpProverConfig,
    HttpProvingClient,
    LocalProver,
    ProgramEnv,
    Receipt,
    canonical_json,
    claim_digest,
    input_digest,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Doubler:
    image_id = "img-double"

    def run(self, env: ProgramEnv) -> None:
        env.commit({"out": env.read()["x"] * 2})


class _Summer:
    """Asserts a doubler claim, then commits its own."""

    image_id = "img-sum"

    def run(self, env: ProgramEnv) -> None:
        payload = env.read()
        env.verify(_Doubler.image_id, {"out": payload["doubled"]})
        env.commit({"sum": payload["doubled"] + 1})


class _Silent:
    image_id = "img-silent"

    def run(self, env: ProgramEnv) -> None:
        pass


class _Registry:
    def __init__(self) -> None:
        self._programs = {p.image_id: p for p in (_Doubler(), _Summer(), _Silent())}

    def program(self, image_id: str) -> Any:
        return self._programs[image_id]


def _client(handler) -> HttpProvingClient:
    return HttpProvingClient(
        HttpProverConfig(base_url="http://prover.test", api_key="secret"),
        transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# Digests and receipts
# ---------------------------------------------------------------------------


class TestDigests:
    def test_canonical_json_is_key_order_independent(self) -> None:
        assert canonical_json({"b": 1, "a": [1.5, 2]}) == '{"a":[1.5,2],"b":1}'
        assert input_digest({"b": 1, "a": 2}) == input_digest({"a": 2, "b": 1})

    def test_canonical_json_rejects_nan(self) -> None:
        with pytest.raises(ValueError):
            canonical_json({"x": float("nan")})

    def test_claim_matches_receipt(self) -> None:
        receipt = LocalProver(_Registry()).generate(_Doubler.image_id, {"x": 2})
        assert receipt.claim == claim_digest(_Doubler.image_id, {"out": 4})


class TestLocalProver:
    def test_generate_and_verify(self) -> None:
        prover = LocalProver(_Registry())
        receipt = prover.generate(_Doubler.image_id, {"x": 21})
        prover.verify(receipt, _Doubler.image_id)
        assert receipt.public_output() == {"out": 42}

    def test_wrong_image(self) -> None:
        receipt = LocalProver(_Registry()).generate(_Doubler.image_id, {"x": 1})
        with pytest.raises(ExternalProvingFailure) as info:
            receipt.verify("img-other")
        assert info.value.retryable is False

    def test_tampered_journal(self) -> None:
        receipt = LocalProver(_Registry()).generate(_Doubler.image_id, {"x": 1})
        forged = Receipt(receipt.image_id, '{"out":3}', receipt.seal, receipt.assumptions)
        with pytest.raises(ExternalProvingFailure, match="seal"):
            forged.verify(_Doubler.image_id)

    def test_assumption_composition(self) -> None:
        prover = LocalProver(_Registry())
        inner = prover.generate(_Doubler.image_id, {"x": 5})
        outer = prover.generate(_Summer.image_id, {"doubled": 10}, [inner])
        prover.verify(outer, _Summer.image_id)
        assert outer.public_output() == {"sum": 11}
        assert outer.assumptions == (inner.claim,)

    def test_missing_assumption(self) -> None:
        prover = LocalProver(_Registry())
        inner = prover.generate(_Doubler.image_id, {"x": 5})
        with pytest.raises(AssumptionNotFound):
            prover.generate(_Summer.image_id, {"doubled": 11}, [inner])

    def test_program_must_commit(self) -> None:
        with pytest.raises(ExternalProvingFailure, match="committed no output"):
            LocalProver(_Registry()).generate(_Silent.image_id, {})

    def test_receipt_dict_round_trip(self) -> None:
        receipt = LocalProver(_Registry()).generate(_Doubler.image_id, {"x": 1})
        assert Receipt.from_dict(json.loads(json.dumps(receipt.to_dict()))) == receipt


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class TestHttpProvingClient:
    def test_generate_posts_request(self) -> None:
        seen: Dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "image_id": "img-a", "journal": '{"ok":true}', "seal": "remote:abc",
            })

        client = _client(handler)
        receipt = client.generate("img-a", {"values": [1.0, 2.0]})
        assert seen["path"] == "/generate"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"image_id": "img-a", "input": {"values": [1.0, 2.0]}, "assumptions": []}
        assert receipt.public_output() == {"ok": True}
        client.close()

    def test_verify(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/verify"
            return httpx.Response(200, json={"valid": True})

        receipt = Receipt("img-a", "{}", "remote:abc")
        _client(handler).verify(receipt, "img-a")

    def test_verify_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"valid": False, "error": "bad seal"})

        with pytest.raises(ExternalProvingFailure, match="bad seal") as info:
            _client(handler).verify(Receipt("img-a", "{}", "remote:abc"), "img-a")
        assert info.value.retryable is False

    def test_rate_limit_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="slow down")

        with pytest.raises(ExternalProvingFailure) as info:
            _client(handler).generate("img-a", {})
        assert info.value.retryable is True

    def test_server_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="busy")

        with pytest.raises(ExternalProvingFailure) as info:
            _client(handler).generate("img-a", {})
        assert info.value.retryable is True

    def test_client_error_is_fatal(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="guest panicked")

        with pytest.raises(ExternalProvingFailure) as info:
            _client(handler).generate("img-a", {})
        assert info.value.retryable is False

    def test_transport_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalProvingFailure, match="error sending request") as info:
            _client(handler).generate("img-a", {})
        assert info.value.retryable is True

    def test_wrong_image_returned(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"image_id": "img-b", "journal": "{}", "seal": "s"})

        with pytest.raises(ExternalProvingFailure, match="expected img-a"):
            _client(handler).generate("img-a", {})

    def test_invalid_json(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="not json")

        with pytest.raises(ExternalProvingFailure, match="invalid JSON"):
            _client(handler).generate("img-a", {})
