# =============================================================================
# Fundus Edge Demo - Demo API Entry Point
# =============================================================================
# CLI entry point for starting the local demo API. The model is fetched and
# executed in-process on the CPU execution provider.
# =============================================================================

import argparse
import logging

import uvicorn

from config import get_config


def main():
    """Parse CLI arguments, apply overrides, and start the demo API."""
    parser = argparse.ArgumentParser(
        description="Fundus Edge Demo — local demo API",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Bind port")
    parser.add_argument("--model", type=str, default=None, help="Model URL or path (.onnx)")
    parser.add_argument("--manifest", type=str, default=None, help="Path to the JSON test manifest")
    parser.add_argument("--cache-capacity", type=int, default=None, help="Tensor cache capacity")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()

    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    if args.model is not None:
        config.model_url = args.model
    if args.manifest is not None:
        config.manifest_path = args.manifest
    if args.cache_capacity is not None:
        config.cache_capacity = args.cache_capacity

    config.server_url = f"http://{config.server_host}:{config.server_port}"

    print("\n" + "=" * 60)
    print("  Fundus Edge Demo — local demo API")
    print("=" * 60)
    print(f"  Model      : {config.model_url}")
    print(f"  Manifest   : {config.manifest_path}")
    print(f"  Classes    : {', '.join(config.class_names)}")
    print(f"  Cache      : {config.cache_capacity} tensors")
    print(f"  Listening  : {config.server_host}:{config.server_port}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "demo.app:app",
        host=config.server_host,
        port=config.server_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
