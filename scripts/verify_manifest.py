# =============================================================================
# Fundus Edge Demo - Manifest Verification Script
# =============================================================================
# Offline utility that walks a test manifest and checks every resource the
# demo will touch: each precomputed embedding must decode as a 256-value
# float32 NPY v1.0 file, and each photograph must decode as an image.
#
# Usage:
#   python3 -m scripts.verify_manifest --manifest data/test_split_preproc.json
#
# Exit status is 1 if any resource fails, with one line per failure.
# =============================================================================

import argparse
import asyncio
import logging
import sys
from collections import Counter

from config import get_config
from edge.errors import EdgeDemoError
from edge.manifest import load_manifest
from edge.npy import decode_npy
from edge.preprocess import decode_image
from edge.transport import ResourceFetcher


async def verify(manifest_path: str, check_images: bool) -> int:
    """
    Decode every resource referenced by the manifest.

    Returns:
        Number of failed resources.
    """
    config = get_config()
    samples = load_manifest(manifest_path)
    fetcher = ResourceFetcher(timeout=config.request_timeout_seconds)
    failures = 0
    labels = Counter()

    for sample in samples:
        labels[config.class_names[sample.ground_truth_index]] += 1
        try:
            if sample.precomputed_tensor_path:
                data = await fetcher.fetch(sample.precomputed_tensor_path)
                decode_npy(data, config.embedding_size)
            if check_images:
                data = await fetcher.fetch(sample.original_path)
                decode_image(data, sample.original_path, config.image_size)
        except EdgeDemoError as exc:
            failures += 1
            print(f"  FAIL {sample.original_path}: {type(exc).__name__}: {exc}")

    print(f"\n  Samples : {len(samples)}")
    for label, count in sorted(labels.items()):
        print(f"    {label:<9} {count}")
    print(f"  Failures: {failures}")
    return failures


def main():
    parser = argparse.ArgumentParser(description="Verify every resource in a test manifest")
    parser.add_argument("--manifest", type=str, default=None, help="Path to the JSON test manifest")
    parser.add_argument("--skip-images", action="store_true", help="Only check NPY embeddings")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    manifest_path = args.manifest or get_config().manifest_path
    failures = asyncio.run(verify(manifest_path, check_images=not args.skip_images))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
