#!/usr/bin/env python3
"""
Video File Processing Script
============================

Standalone script running the pipeline over one video file.

This script:
    1. Opens the video file (optionally down-sampled)
    2. Streams windows to the mock or REST estimation backend
    3. Prints every ordered result as it is released
    4. Reports a final summary once the file has ended

Usage:
    python scripts/process_file.py clip.mp4
    python scripts/process_file.py clip.mp4 --backend rest --endpoint https://... --api-key ...
    python scripts/process_file.py clip.mp4 --window-length 150 --overlap 0.5 --target-fps 30
"""

import argparse
import asyncio
import logging
import os
import sys
import time

from vitals_stream.errors import VitalsStreamError
from vitals_stream.estimation import MockEstimationClient, RestEstimationClient
from vitals_stream.pipeline import StreamProcessor
from vitals_stream.sources import VideoFileFrameSource


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _format_result(result) -> str:
    if result.is_placeholder:
        return f"window {result.window_id:>4}  [{result.status.value}] {result.error or ''}"

    parts = []
    for name, series in sorted(result.vitals.items()):
        if len(series.values) == 1:
            unit = f" {series.unit}" if series.unit else ""
            parts.append(f"{name}={series.latest:.1f}{unit}")
        else:
            parts.append(f"{name}=<{len(series.values)} samples>")
    return (
        f"window {result.window_id:>4}  "
        f"t=[{result.start_timestamp:.2f}, {result.end_timestamp:.2f}]  "
        + "  ".join(parts)
    )


async def run(args: argparse.Namespace) -> dict:
    """
    Process the file and print results.

    Args:
        args: Parsed command line arguments

    Returns:
        Final metrics dict
    """
    logger.info("=" * 60)
    logger.info(f"Processing: {args.path}")
    logger.info(f"Backend: {args.backend}")
    logger.info(f"Window: {args.window_length} frames, overlap {args.overlap}")
    logger.info("=" * 60)

    if args.backend == "rest":
        client = RestEstimationClient(
            endpoint=args.endpoint,
            api_key=args.api_key,
            timeout=args.http_timeout,
        )
    else:
        client = MockEstimationClient(latency_seconds=0.05)

    processor = StreamProcessor(
        source=VideoFileFrameSource(args.path, target_fps=args.target_fps),
        client=client,
        window_length=args.window_length,
        overlap=args.overlap,
        result_timeout=args.result_timeout,
        max_in_flight=args.max_in_flight,
    )

    start_time = time.time()
    results = 0
    placeholders = 0

    try:
        await processor.start()
        async for result in processor.results():
            results += 1
            if result.is_placeholder:
                placeholders += 1
            print(_format_result(result), flush=True)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except VitalsStreamError as e:
        logger.error(f"Processing failed: {e}")
    finally:
        await processor.stop()
        await processor.wait_stopped()
        if isinstance(client, RestEstimationClient):
            client.close()

    total_time = time.time() - start_time
    metrics = processor.metrics()

    logger.info("=" * 60)
    logger.info("FINAL SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Total runtime: {total_time:.1f} seconds")
    logger.info(f"Frames received: {metrics['processor']['frames_received']}")
    logger.info(f"Windows sealed: {metrics['processor']['windows_sealed']}")
    logger.info(f"Results: {results} ({placeholders} placeholders)")
    logger.info(f"Resubmits: {metrics['processor']['resubmits']}")
    logger.info(f"Final state: {metrics['state']}")
    logger.info("=" * 60)

    return {
        "duration": total_time,
        "results": results,
        "placeholders": placeholders,
        "failed": processor.error is not None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Estimate vital signs over a video file"
    )
    parser.add_argument("path", type=str, help="Video file to process")
    parser.add_argument(
        "--backend",
        choices=["mock", "rest"],
        default="mock",
        help="Estimation backend (default: mock)",
    )
    parser.add_argument(
        "--endpoint",
        type=str,
        default=os.environ.get("VITALS_ESTIMATION_ENDPOINT", ""),
        help="REST endpoint (rest backend)",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=os.environ.get("VITALS_API_KEY"),
        help="API key sent as x-api-key (rest backend)",
    )
    parser.add_argument("--window-length", type=int, default=150, help="Frames per window")
    parser.add_argument("--overlap", type=float, default=0.0, help="Window overlap [0, 1)")
    parser.add_argument("--target-fps", type=float, default=None, help="Down-sample to this fps")
    parser.add_argument("--result-timeout", type=float, default=30.0, help="Seconds per window")
    parser.add_argument("--http-timeout", type=float, default=20.0, help="HTTP timeout")
    parser.add_argument("--max-in-flight", type=int, default=4, help="Concurrent requests")

    args = parser.parse_args()

    if args.backend == "rest" and not args.endpoint:
        parser.error("--endpoint is required for the rest backend")

    result = asyncio.run(run(args))

    # Exit with appropriate code
    sys.exit(1 if result["failed"] else 0)


if __name__ == "__main__":
    main()
