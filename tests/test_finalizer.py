"""
Vigil Liveness Engine: Capture Finalizer Tests
==============================================
Payload shape, proof freshness, and error classification against an
httpx.MockTransport standing in for the biometric API.
"""

import json
import time
import unittest
from unittest.mock import MagicMock

import httpx
import numpy as np

from conftest import DESCRIPTOR, run_async
from vigil_finalizer import (
    BiometricAPI,
    BiometricResponse,
    CaptureFinalizer,
    decode_descriptor,
    encode_descriptor,
    encode_snapshot,
)
from vigil_types import (
    ChallengeType,
    FinalizeError,
    LivenessResult,
    ProofExpiredError,
    Verdict,
)


def _result(challenge=ChallengeType.BLINK, age_s=1.0, descriptor=DESCRIPTOR, snapshot=None,
            verdict=Verdict.PASSED):
    return LivenessResult(
        verdict=verdict,
        challenge_type=challenge,
        descriptor=descriptor,
        captured_at=time.time() - age_s,
        liveness_score=1.25,
        positive_score=30,
        frames_observed=24,
        snapshot=snapshot,
    )


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def _finalizer(handler, **kwargs):
    api = BiometricAPI(base_url="http://biometry.test", transport=httpx.MockTransport(handler))
    kwargs.setdefault("proof_max_age_s", {"blink": 30, "smile": 20, "head-turn": 45, "default": 30})
    return CaptureFinalizer(api, device="test-device", **kwargs)


class TestCaptureFinalizer(unittest.TestCase):

    def test_register_payload(self):
        rec = Recorder(httpx.Response(200, json={"success": True, "message": "ok"}))
        finalizer = _finalizer(rec)
        result = _result()

        response = run_async(finalizer.finalize(result, "user-7", mode="register"))

        self.assertTrue(response.success)
        request = rec.requests[0]
        self.assertEqual(request.url, httpx.URL("http://biometry.test/api/biometry/register"))
        body = rec.last_json
        self.assertEqual(body["userId"], "user-7")
        self.assertEqual(body["type"], "face")
        self.assertEqual(decode_descriptor(body["descriptorData"]), list(DESCRIPTOR))
        self.assertEqual(body["livenessProof"]["challenge"], "blink")
        self.assertEqual(body["livenessProof"]["timestamp"], int(result.captured_at * 1000))
        self.assertNotIn("imageData", body["livenessProof"])
        self.assertEqual(body["metadata"], {
            "livenessScore": 1.25,
            "device": "test-device",
            "challengeType": "blink",
        })

    def test_verify_payload_and_similarity_score(self):
        rec = Recorder(httpx.Response(200, json={"success": True, "similarity": 0.93}))
        finalizer = _finalizer(rec)

        response = run_async(finalizer.finalize(_result(ChallengeType.SMILE), "user-7", mode="verify"))

        self.assertEqual(rec.requests[0].url.path, "/api/biometry/verify")
        body = rec.last_json
        self.assertEqual(set(body), {"userId", "descriptorData", "livenessProof"})
        self.assertEqual(body["livenessProof"]["challenge"], "smile")
        self.assertAlmostEqual(response.score, 0.93)

    def test_snapshot_sent_as_jpeg_data_url(self):
        rec = Recorder(httpx.Response(200, json={"success": True}))
        frame = np.full((48, 64, 3), 120, dtype=np.uint8)
        run_async(_finalizer(rec).finalize(_result(snapshot=frame), "u", mode="verify"))
        image = rec.last_json["livenessProof"]["imageData"]
        self.assertTrue(image.startswith("data:image/jpeg;base64,"))

    def test_server_error_is_recoverable_and_retry_succeeds(self):
        rec = Recorder(
            httpx.Response(503, json={"message": "maintenance"}),
            httpx.Response(200, json={"success": True}),
        )
        finalizer = _finalizer(rec)
        result = _result()

        with self.assertRaises(FinalizeError) as ctx:
            run_async(finalizer.finalize(result, "u"))
        self.assertTrue(ctx.exception.recoverable)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIn("maintenance", str(ctx.exception))

        response = run_async(finalizer.finalize(result, "u"))
        self.assertTrue(response.success)
        self.assertEqual(rec.requests[0].content, rec.requests[1].content)

    def test_client_error_is_not_recoverable(self):
        rec = Recorder(httpx.Response(400, json={"message": "Invalid liveness proof"}))
        with self.assertRaises(FinalizeError) as ctx:
            run_async(_finalizer(rec).finalize(_result(), "u"))
        self.assertFalse(ctx.exception.recoverable)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_timeout_is_recoverable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with self.assertRaises(FinalizeError) as ctx:
            run_async(_finalizer(handler).finalize(_result(), "u"))
        self.assertTrue(ctx.exception.recoverable)
        self.assertIsNone(ctx.exception.status_code)

    def test_connection_error_is_recoverable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(FinalizeError) as ctx:
            run_async(_finalizer(handler).finalize(_result(), "u"))
        self.assertTrue(ctx.exception.recoverable)

    def test_stale_proof_is_refused_per_challenge(self):
        rec = Recorder(httpx.Response(200, json={"success": True}))
        finalizer = _finalizer(rec)

        with self.assertRaises(ProofExpiredError) as ctx:
            run_async(finalizer.finalize(_result(ChallengeType.SMILE, age_s=25), "u"))
        self.assertFalse(ctx.exception.recoverable)
        self.assertEqual(rec.requests, [], "stale proof never leaves the client")

        # blink proofs are accepted for 30 s
        response = run_async(finalizer.finalize(_result(ChallengeType.BLINK, age_s=25), "u"))
        self.assertTrue(response.success)

    def test_missing_descriptor_is_refused(self):
        with self.assertRaises(FinalizeError) as ctx:
            run_async(_finalizer(Recorder()).finalize(_result(descriptor=None), "u"))
        self.assertFalse(ctx.exception.recoverable)

    def test_failed_result_is_refused(self):
        with self.assertRaises(FinalizeError):
            run_async(_finalizer(Recorder()).finalize(_result(verdict=Verdict.FAILED), "u"))

    def test_unknown_mode_rejected(self):
        with self.assertRaises(ValueError):
            run_async(_finalizer(Recorder()).finalize(_result(), "u", mode="delete"))

    def test_audit_records_attempt_and_failure(self):
        audit = MagicMock()
        rec = Recorder(httpx.Response(502, text="bad gateway"))
        finalizer = _finalizer(rec, audit=audit)
        with self.assertRaises(FinalizeError):
            run_async(finalizer.finalize(_result(), "u"))

        events = [call.kwargs["event"] for call in audit.log.call_args_list]
        self.assertEqual(events, ["finalize_attempt", "finalize_failed"])


def test_descriptor_encoding_is_base64_json():
    encoded = encode_descriptor((0.5, -1.0))
    assert decode_descriptor(encoded) == [0.5, -1.0]


def test_encode_snapshot_ignores_non_images():
    assert encode_snapshot(None) is None
    assert encode_snapshot(np.zeros((0,), dtype=np.uint8)) is None


def test_response_mapping():
    resp = BiometricResponse.from_json({"success": False, "message": "no match", "similarity": 0.41})
    assert resp.success is False
    assert resp.score == 0.41
    assert resp.message == "no match"
    assert BiometricResponse.from_json(["odd"]).success is False


def test_from_config_uses_api_section():
    config = {"api": {"base_url": "https://api.example.com/", "timeout_s": 3.0}}
    finalizer = CaptureFinalizer.from_config(config)
    assert finalizer.api.base_url == "https://api.example.com"
    assert finalizer.api.timeout_s == 3.0
    assert finalizer.max_age_for("head-turn") == 45
    assert finalizer.max_age_for("unknown") == 30
