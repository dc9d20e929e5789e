"""CLI entry point for bucketsync."""

import argparse
import logging
import sys
import time
from pathlib import Path

from prometheus_client import REGISTRY, write_to_textfile
from pydantic import ValidationError

from bucketsync import metrics
from bucketsync.auth import Credential, object_resource_path
from bucketsync.config import SyncConfig, load_config
from bucketsync.errors import SyncError
from bucketsync.executor import BatchExecutor, BatchProgress, CallbackListener, RetryPolicy
from bucketsync.logging_config import configure_logging
from bucketsync.presign import DelegatedUrlFactory
from bucketsync.reconcile import Reconciler
from bucketsync.transport import HttpTransport

logger = logging.getLogger("bucketsync")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="bucketsync",
        description="bucketsync - compare local trees with S3-compatible buckets",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("bucketsync.yaml"),
        help="Path to YAML configuration file (default: bucketsync.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    parser.add_argument(
        "--metrics-file",
        type=Path,
        default=None,
        help="Write Prometheus metrics to this file on exit (overrides config)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    diff_parser = subparsers.add_parser("diff", help="Compare a local directory with a prefix")
    diff_parser.add_argument("local_dir", type=Path, help="Local directory to compare")
    diff_parser.add_argument(
        "--prefix", default="", help="Remote key prefix (default: bucket root)"
    )
    diff_parser.add_argument("--workers", type=int, default=None, help="Overrides config")

    presign_parser = subparsers.add_parser("presign", help="Print a delegated URL")
    presign_parser.add_argument("verb", choices=["get", "put", "head", "delete"])
    presign_parser.add_argument("key", help="Object key")
    presign_parser.add_argument(
        "--expires-in", type=int, default=3600, help="Seconds until expiry (default: 3600)"
    )
    presign_parser.add_argument(
        "--content-type", default="application/octet-stream", help="Bound content type (put)"
    )
    presign_parser.add_argument(
        "--header",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Bound custom header (put); may be repeated",
    )
    return parser.parse_args(argv)


def _credential(config: SyncConfig) -> Credential:
    return Credential(access_id=config.auth.access_key, secret_key=config.auth.secret_key)


def build_executor(config: SyncConfig) -> BatchExecutor:
    """Create a BatchExecutor from the executor config section."""
    retry = config.executor.retry
    return BatchExecutor(
        max_workers=config.executor.max_workers,
        retry_policy=RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
        ),
        progress_interval=config.executor.progress_interval,
        max_batch_size=config.executor.max_batch_size,
    )


def _log_progress(progress: BatchProgress) -> None:
    logger.info("Fetched metadata for %d of %d objects", progress.finished, progress.total)


def run_diff(config: SyncConfig, local_dir: Path, prefix: str) -> int:
    """Reconcile ``local_dir`` against ``prefix`` and print the five sets."""
    reconciler = Reconciler(build_executor(config))
    with HttpTransport(
        config.endpoint.url,
        config.endpoint.bucket,
        _credential(config),
        timeout=config.endpoint.timeout,
        page_size=config.endpoint.page_size,
    ) as transport:
        result = reconciler.reconcile(
            local_dir,
            transport,
            remote_prefix=prefix,
            listener=CallbackListener(on_progress=_log_progress),
        )

    for outcome, keys in result:
        print(f"{outcome} ({len(keys)}):")
        for key in sorted(keys):
            print(f"  {key}")
    return 0 if result.in_sync else 2


def run_presign(config: SyncConfig, args: argparse.Namespace) -> int:
    """Print a delegated URL for one object."""
    factory = DelegatedUrlFactory(config.endpoint.url)
    path = object_resource_path(config.endpoint.bucket, args.key)
    expiry = int(time.time()) + args.expires_in
    credential = _credential(config)

    if args.verb == "put":
        headers = {}
        for item in args.header:
            name, sep, value = item.partition("=")
            if not sep:
                raise SyncError("InvalidArgument", f"Header must be NAME=VALUE: {item!r}")
            headers[name] = value
        delegated = factory.create_put_url(path, expiry, credential, args.content_type, headers)
    else:
        create = {
            "get": factory.create_get_url,
            "head": factory.create_head_url,
            "delete": factory.create_delete_url,
        }[args.verb]
        delegated = create(path, expiry, credential)

    print(delegated.url)
    if delegated.bound_metadata is not None:
        for name, value in delegated.bound_metadata.as_request_headers().items():
            print(f"{name}: {value}")
    return 0


def write_metrics(path: str) -> None:
    """Write the default registry in Prometheus text format to ``path``."""
    try:
        write_to_textfile(path, REGISTRY)
    except OSError as exc:
        logger.error("Failed to write metrics to %s: %s", path, exc)
    else:
        logger.debug("Wrote metrics to %s", path)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the bucketsync CLI.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    # Apply CLI overrides
    if args.log_level is not None:
        config.observability.log_level = args.log_level
    if args.log_format is not None:
        config.observability.log_format = args.log_format
    if args.metrics_file is not None:
        config.observability.metrics_file = str(args.metrics_file)
    if getattr(args, "workers", None) is not None:
        try:
            config.executor.max_workers = args.workers
        except ValidationError as exc:
            logger.error("Invalid --workers value: %s", exc)
            sys.exit(1)

    configure_logging(
        level=config.observability.log_level,
        fmt=config.observability.log_format,
    )
    metrics_file = config.observability.metrics_file
    if config.observability.metrics or metrics_file:
        metrics.init_metrics()

    try:
        if args.command == "diff":
            code = run_diff(config, args.local_dir, args.prefix)
        else:
            code = run_presign(config, args)
    except SyncError as exc:
        logger.error("%s: %s", exc.code, exc.message)
        code = 1
    finally:
        if metrics_file:
            write_metrics(metrics_file)
    sys.exit(code)


if __name__ == "__main__":
    main()
