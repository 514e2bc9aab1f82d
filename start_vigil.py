"""
Vigil Liveness Engine: Launcher
===============================
Runs one liveness challenge against a webcam or video file and,
on pass, registers or verifies the captured face with the biometric API.

Usage:
  python start_vigil.py --analyzer my_models.faceapi:FaceApiAnalyzer
  python start_vigil.py --analyzer my_models.faceapi:FaceApiAnalyzer --challenge smile --source clip.mp4
  python start_vigil.py --analyzer ... --mode verify --user-id 42 --api-url https://api.example.com

Exit codes: 0 passed (and finalized), 1 liveness failed, 2 setup or finalize error.
"""

import argparse
import asyncio
import sys

from vigil_analyzer import load_analyzer
from vigil_camera import CameraSource
from vigil_config import load_config, setup_logger
from vigil_engine import LivenessVerifier
from vigil_types import ChallengeType, FinalizeError, SessionState, VigilError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vigil liveness verification")
    parser.add_argument("--challenge", choices=[c.value for c in ChallengeType], default="blink",
                        help="Gesture the user must perform (default blink)")
    parser.add_argument("--source", type=str, default=None,
                        help="Camera ID (0, 1, etc.) or video file path")
    parser.add_argument("--mode", choices=["register", "verify", "none"], default="none",
                        help="Send the passed result to the biometric API")
    parser.add_argument("--user-id", type=str, default=None, help="User to register or verify")
    parser.add_argument("--api-url", type=str, default=None, help="Biometric API base URL")
    parser.add_argument("--config", type=str, default=None, help="Alternative config.yaml")
    parser.add_argument("--analyzer", type=str, default=None,
                        help="Face analyzer as 'package.module:ClassName'")
    parser.add_argument("--timeout", type=float, default=None, help="Session timeout in seconds")
    return parser


def apply_args(config: dict, args: argparse.Namespace) -> dict:
    if args.source is not None:
        config["camera"]["camera_id"] = int(args.source) if args.source.isdigit() else args.source
    if args.api_url:
        config["api"]["base_url"] = args.api_url
    if args.analyzer:
        config["analyzer"]["path"] = args.analyzer
    if args.timeout is not None:
        config["session"]["timeout_s"] = args.timeout
    return config


async def run(args: argparse.Namespace) -> int:
    config = apply_args(load_config(args.config), args)
    log = setup_logger("Vigil", config["logging"]["level"])

    if not config["analyzer"]["path"]:
        log.error("No face analyzer configured; pass --analyzer module:Class")
        return 2
    if args.mode != "none" and not args.user_id:
        log.error("--user-id is required with --mode %s", args.mode)
        return 2

    analyzer = load_analyzer(config["analyzer"]["path"])
    cam = config["camera"]

    def open_source():
        return CameraSource(cam["camera_id"], cam["width"], cam["height"], cam["fps"])

    async with LivenessVerifier(analyzer, config=config, source_factory=open_source) as verifier:
        verifier.on("model_progress", lambda pct: log.info("Loading models... %d%%", pct))
        verifier.on("state_changed", lambda old, new: log.info("State: %s", new.value))
        verifier.on("progress_changed", lambda pct: log.info("Progress: %.0f%%", pct))
        verifier.on("failed", lambda reason: log.warning("Failed: %s", reason))

        print("=" * 60)
        print("  Vigil Liveness - Starting...")
        print(f"  Source:    {cam['camera_id']}")
        print(f"  Challenge: {args.challenge}")
        print(f"  Analyzer:  {config['analyzer']['path']}")
        print("=" * 60)

        try:
            session = await verifier.run(ChallengeType(args.challenge))
        except VigilError as e:
            log.error("Liveness could not run: %s", e)
            return 2

        if session.state is not SessionState.PASSED:
            log.warning("Liveness not confirmed (%s)", session.failure_reason)
            return 1

        result = session.result
        log.info("Liveness confirmed: score=%.3f frames=%d",
                 result.liveness_score, result.frames_observed)
        if args.mode == "none":
            return 0

        try:
            response = await verifier.finalize(args.user_id, mode=args.mode)
        except FinalizeError as e:
            hint = " (retry possible)" if e.recoverable else ""
            log.error("Finalize failed%s: %s", hint, e)
            return 2

        log.info("API response: success=%s score=%s message=%s",
                 response.success, response.score, response.message)
        return 0 if response.success else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n[VIGIL] Interrupted by User.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
