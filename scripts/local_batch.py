"""
Quick local helper: admits local images into the five slots, runs the batch
and writes `<name>-<n>.jpg` files to disk. This bypasses the API layer.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from photoprep_service.admission import SLOT_COUNT, AdmissionController, CandidateFile, artifact_filename
from photoprep_service.batch_worker import BatchScheduler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prepare submission photos from local files")
    parser.add_argument("inputs", nargs="+", help=f"Paths to the input images (exactly {SLOT_COUNT})")
    parser.add_argument("--name", required=True, help="Normalized identifier used in output filenames")
    parser.add_argument("--output-dir", required=True, help="Directory to write the JPEG files to")
    return parser.parse_args()


def _print_progress(index: int, total: int) -> None:
    print(f"Processing image {index + 1} of {total}...")


async def run(args: argparse.Namespace) -> int:
    candidates = []
    for raw in args.inputs:
        path = Path(raw)
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")
        candidates.append(CandidateFile(name=path.name, data=path.read_bytes()))

    controller = AdmissionController()
    outcome = await controller.admit_many(candidates)
    if outcome.message:
        print(outcome.message)

    for slot in controller.slots:
        if slot.error:
            print(f"Image {slot.index + 1}: {slot.error}")
    if not controller.all_valid:
        print(f"All {SLOT_COUNT} slots must hold a valid image before processing.")
        return 1

    await BatchScheduler(controller).run_all(on_progress=_print_progress)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    exit_code = 0
    for slot in controller.slots:
        if slot.artifact is not None:
            target = output_dir / artifact_filename(args.name, slot.index)
            target.write_bytes(slot.artifact.data)
            print(f"Wrote {target} ({slot.result.width}x{slot.result.height}, quality {slot.result.quality_used:.2f})")
            if slot.warning:
                print(f"  warning: {slot.warning}")
        elif slot.error:
            print(f"Image {slot.index + 1} failed: {slot.error}")
            exit_code = 1
    return exit_code


def main() -> None:
    args = parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
