"""
Vigil Liveness Engine: Capture Finalizer
========================================
Packages a passed LivenessResult (descriptor + liveness proof) and
forwards it to the external biometric registration / verification API.

Failure policy:
  - transport errors, timeouts, 5xx  -> FinalizeError(recoverable=True)
  - other 4xx                        -> FinalizeError(recoverable=False)
  - proof older than the API window  -> ProofExpiredError
The LivenessResult is never modified, so a recoverable failure can be
retried with the same result without repeating the challenge.
"""

from __future__ import annotations

import base64
import json
import logging
import platform
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import cv2
import httpx
import numpy as np

from vigil_config import section
from vigil_logger import VigilLogger
from vigil_types import FinalizeError, LivenessResult, ProofExpiredError, Verdict


_log = logging.getLogger("VigilFinalizer")

JPEG_QUALITY = 80


@dataclass
class BiometricResponse:
    """Parsed reply of the biometric API."""
    success: bool
    score: Optional[float] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, body: Any) -> "BiometricResponse":
        if not isinstance(body, dict):
            return cls(success=False, message="Unexpected response body", raw={"body": body})
        score = body.get("score", body.get("similarity"))
        return cls(
            success=bool(body.get("success", False)),
            score=float(score) if score is not None else None,
            message=body.get("message"),
            raw=body,
        )


class BiometricAPI:
    """Async HTTP client for the biometric register / verify endpoints."""

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        register_path: str = "/api/biometry/register",
        verify_path: str = "/api/biometry/verify",
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.register_path = register_path
        self.verify_path = verify_path
        self.timeout_s = timeout_s
        self._transport = transport
        self._headers = headers or {}

    async def register(self, payload: dict) -> BiometricResponse:
        return await self._post(self.register_path, payload)

    async def verify(self, payload: dict) -> BiometricResponse:
        return await self._post(self.verify_path, payload)

    async def _post(self, path: str, payload: dict) -> BiometricResponse:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s,
                transport=self._transport,
                headers=self._headers,
            ) as client:
                resp = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise FinalizeError(f"Biometric API timed out: {url}", recoverable=True) from e
        except httpx.HTTPError as e:
            raise FinalizeError(f"Biometric API unreachable: {e}", recoverable=True) from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            raise FinalizeError(
                f"Biometric API rejected request (HTTP {resp.status_code}): {message}",
                recoverable=resp.status_code >= 500,
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise FinalizeError(
                "Biometric API returned a non-JSON body",
                recoverable=True,
                status_code=resp.status_code,
            ) from e
        return BiometricResponse.from_json(body)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return str(body)[:200]


def encode_descriptor(descriptor) -> str:
    """Base64 of the JSON array of descriptor floats."""
    data = json.dumps([float(v) for v in descriptor])
    return base64.b64encode(data.encode("utf-8")).decode("ascii")


def decode_descriptor(data: str) -> list:
    return json.loads(base64.b64decode(data).decode("utf-8"))


def encode_snapshot(frame: Optional[np.ndarray], quality: int = JPEG_QUALITY) -> Optional[str]:
    """JPEG data URL of a BGR frame, or None if it cannot be encoded."""
    if not isinstance(frame, np.ndarray) or frame.size == 0:
        return None
    ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        _log.warning("Snapshot JPEG encoding failed (shape=%s)", frame.shape)
        return None
    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


class CaptureFinalizer:
    """Turns a passed LivenessResult into a biometric API call."""

    def __init__(
        self,
        api: BiometricAPI,
        proof_max_age_s: Optional[Dict[str, float]] = None,
        include_snapshot: bool = True,
        device: Optional[str] = None,
        audit: Optional[VigilLogger] = None,
    ):
        self.api = api
        self.proof_max_age_s = proof_max_age_s or {"default": 30}
        self.include_snapshot = include_snapshot
        self.device = device or f"vigil/{platform.system()}-{platform.machine()}"
        self.audit = audit

    @classmethod
    def from_config(
        cls,
        config: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        audit: Optional[VigilLogger] = None,
    ) -> "CaptureFinalizer":
        api_cfg = section(config, "api")
        api = BiometricAPI(
            base_url=api_cfg["base_url"],
            register_path=api_cfg["register_path"],
            verify_path=api_cfg["verify_path"],
            timeout_s=api_cfg["timeout_s"],
            transport=transport,
        )
        return cls(api, proof_max_age_s=api_cfg["proof_max_age_s"], audit=audit)

    def max_age_for(self, challenge: str) -> float:
        return float(self.proof_max_age_s.get(challenge, self.proof_max_age_s.get("default", 30)))

    def build_proof(self, result: LivenessResult) -> dict:
        proof = {
            "challenge": result.challenge_type.value,
            "timestamp": int(result.captured_at * 1000),
        }
        if self.include_snapshot:
            image = encode_snapshot(result.snapshot)
            if image is not None:
                proof["imageData"] = image
        return proof

    def build_register_payload(self, result: LivenessResult, user_id: str) -> dict:
        return {
            "userId": user_id,
            "descriptorData": encode_descriptor(result.descriptor),
            "livenessProof": self.build_proof(result),
            "type": "face",
            "metadata": {
                "livenessScore": result.liveness_score,
                "device": self.device,
                "challengeType": result.challenge_type.value,
            },
        }

    def build_verify_payload(self, result: LivenessResult, user_id: str) -> dict:
        return {
            "userId": user_id,
            "descriptorData": encode_descriptor(result.descriptor),
            "livenessProof": self.build_proof(result),
        }

    def check(self, result: LivenessResult) -> None:
        """Raise if the result cannot be sent at all."""
        if result.verdict != Verdict.PASSED:
            raise FinalizeError("Only a passed liveness result can be finalized", recoverable=False)
        if not result.descriptor:
            raise FinalizeError("Liveness result carries no face descriptor", recoverable=False)
        max_age = self.max_age_for(result.challenge_type.value)
        if result.age_s > max_age:
            raise ProofExpiredError(
                f"Liveness proof is {result.age_s:.1f}s old; "
                f"{result.challenge_type.value} proofs expire after {max_age:.0f}s"
            )

    async def finalize(self, result: LivenessResult, user_id: str, mode: str = "register") -> BiometricResponse:
        """Send the result to the register or verify endpoint.

        Args:
            result: Passed LivenessResult from a session.
            user_id: Identifier of the user being enrolled or verified.
            mode: "register" or "verify".

        Returns:
            BiometricResponse from the API. ``success`` may still be False
            (e.g. descriptor did not match on verify).

        Raises:
            FinalizeError: Transport or API failure; check ``recoverable``.
            ProofExpiredError: The proof is too old to be accepted.
        """
        if mode not in ("register", "verify"):
            raise ValueError(f"mode must be 'register' or 'verify', got {mode!r}")

        self.check(result)
        if mode == "register":
            payload = self.build_register_payload(result, user_id)
        else:
            payload = self.build_verify_payload(result, user_id)

        self._audit("finalize_attempt", mode=mode, user_id=user_id,
                    challenge=result.challenge_type.value)
        try:
            if mode == "register":
                response = await self.api.register(payload)
            else:
                response = await self.api.verify(payload)
        except FinalizeError as e:
            _log.warning("Finalize %s failed (recoverable=%s): %s", mode, e.recoverable, e)
            self._audit("finalize_failed", mode=mode, user_id=user_id,
                        recoverable=e.recoverable, status_code=e.status_code, message=str(e))
            raise

        _log.info("Finalize %s: success=%s score=%s", mode, response.success, response.score)
        self._audit("finalize_result", mode=mode, user_id=user_id,
                    success=response.success, score=response.score, message=response.message)
        return response

    def _audit(self, event: str, **data) -> None:
        if self.audit is not None:
            self.audit.log(data, event=event)
