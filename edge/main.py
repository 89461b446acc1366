# =============================================================================
# Fundus Edge Demo - Headless Evaluation Client
# =============================================================================
# Entry point for running the on-device pipeline without a UI. Loads the
# model with a progress readout, then classifies random (or all) manifest
# samples, printing each prediction and the running accuracy.
#
# Flow per sample:
#   1. Resolve the tensor (cached NPY embedding or band-scheduled image)
#   2. Perturb with uniform noise and run one forward pass
#   3. Softmax → arg-max → prediction with confidence
#   4. Prefetch another sample's embedding in the background
# =============================================================================

import argparse
import asyncio
import logging
import sys

from config import get_config
from edge.controller import DemoController
from edge.errors import EdgeDemoError
from edge.manifest import load_manifest

logger = logging.getLogger(__name__)


class EvaluationRunner:
    """
    Drives a DemoController through a batch of inference runs.

    Args:
        controller: Controller over the on-device pipeline.
    """

    def __init__(self, controller: DemoController):
        self._controller = controller
        self._last_progress = -1

    def _print_progress(self) -> None:
        progress = self._controller.progress_percent
        if progress != self._last_progress and progress % 10 == 0:
            print(f"  {self._controller.loading_stage:<26} {progress:3d}%")
            self._last_progress = progress

    async def load(self) -> bool:
        """Load the model, echoing progress; False if loading failed."""
        task = self._controller.start_loading()
        while not task.done():
            self._print_progress()
            await asyncio.sleep(0.05)
        self._print_progress()

        if task.cancelled() or task.exception() is not None:
            logger.error("Model load error: %s", self._controller.error)
            return False
        return True

    async def evaluate(self, count: int, evaluate_all: bool = False) -> int:
        """
        Classify ``count`` random samples (or every sample).

        Returns:
            Number of correct predictions.
        """
        samples = self._controller.samples if evaluate_all else None
        runs = len(samples) if samples is not None else count
        correct = 0

        for run_index in range(runs):
            if samples is not None:
                sample = samples[run_index]
                self._controller.select_sample(sample)
            else:
                sample = self._controller.pick_random_sample()
                if sample is None:
                    break

            try:
                result = await self._controller.run_inference()
            except EdgeDemoError:
                logger.exception("Failed to classify %s", sample.original_path)
                continue

            correct += int(bool(result.correct))
            print(
                f"  [{run_index + 1:>3}/{runs}] {result.label:<9} "
                f"{result.confidence * 100:6.2f}%  "
                f"(GT {result.ground_truth_label:<9}) "
                f"{result.elapsed_ms:7.2f} ms  {sample.original_path}"
            )

        if runs:
            print(f"\n  Accuracy: {correct}/{runs} ({correct / runs * 100:.2f}%)")
        return correct

    async def run(self, count: int, evaluate_all: bool = False) -> int:
        """Load, evaluate, clean up; returns a process exit code."""
        try:
            if not await self.load():
                return 1
            await self.evaluate(count, evaluate_all)
            return 0
        finally:
            await self._controller.close()


def main():
    """CLI entry point for the headless evaluation client."""
    parser = argparse.ArgumentParser(
        description="Fundus Edge Demo — headless on-device evaluation",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--model", type=str, default=None, help="Model URL or path (.onnx)")
    parser.add_argument("--manifest", type=str, default=None, help="Path to the JSON test manifest")
    parser.add_argument("--samples", type=int, default=5, help="Number of random samples to classify")
    parser.add_argument("--all", action="store_true", help="Classify every manifest sample in order")
    parser.add_argument("--noise", type=float, default=None, help="Input noise amplitude")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for picks and noise")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()
    if args.model is not None:
        config.model_url = args.model
    if args.manifest is not None:
        config.manifest_path = args.manifest
    if args.noise is not None:
        config.noise_amplitude = args.noise
    if args.seed is not None:
        config.seed = args.seed

    try:
        samples = load_manifest(config.manifest_path)
    except (OSError, ValueError) as exc:
        logger.error("Could not load manifest: %s", exc)
        sys.exit(1)

    print("\n" + "=" * 60)
    print("  Fundus Edge Demo — headless evaluation")
    print("=" * 60)
    print(f"  Model     : {config.model_url}")
    print(f"  Manifest  : {config.manifest_path} ({len(samples)} samples)")
    print(f"  Noise     : ±{config.noise_amplitude}")
    print(f"  Cache     : {config.cache_capacity} tensors")
    print("=" * 60 + "\n")

    controller = DemoController(config, samples)
    runner = EvaluationRunner(controller)
    try:
        exit_code = asyncio.run(runner.run(args.samples, evaluate_all=args.all))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received. Shutting down...")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
