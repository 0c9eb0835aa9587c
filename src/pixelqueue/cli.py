import argparse
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from . import config as config_lib
from . import ingest, transcoder
from .errors import PipelineError
from .queue import CapacityGate, JobWorkerPool, RecoverySweep
from .storage import build_object_store


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", type=str, help="Database URL (sqlite:///path or postgresql://...)")
    common.add_argument("--storage", choices=["local", "s3"], help="Object store backend")
    common.add_argument("--storage-root", type=str, help="Root directory for local storage")
    common.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )
    return common


def _load_settings(path: str) -> dict:
    settings_path = Path(path)
    if not settings_path.exists():
        raise PipelineError(f"Settings file not found: {path}")
    return config_lib.load_yaml(settings_path)


def _print_block(title: str, rows) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    for label, value in rows:
        print(f"{label + ':':<22}{value}")
    print("=" * 60)


def run_worker(conf, once: bool = False) -> None:
    store = ingest.build_job_store(conf.database, conf.worker.concurrency)
    objects = build_object_store(conf.storage)
    sweep = RecoverySweep(
        store, stale_after_s=conf.worker.stale_after_s, interval_s=conf.worker.sweep_interval_s
    )
    gate = CapacityGate(conf.worker.concurrency)

    try:
        with sweep, JobWorkerPool(
            store, objects, gate, poll_interval_s=conf.worker.poll_interval_s
        ) as pool:

            def handle_signal(signum, frame):
                print(f"\nReceived signal {signum}, finishing in-flight jobs...")
                pool.stop()

            signal.signal(signal.SIGTERM, handle_signal)
            signal.signal(signal.SIGINT, handle_signal)

            outcomes = pool.run(until_idle=once)
    finally:
        store.close()

    failed = sum(1 for o in outcomes if o.status != "completed")
    _print_block(
        "WORKER SUMMARY",
        [("Jobs finished", len(outcomes)), ("Failed or lost", failed)],
    )


def main():
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="pixelqueue", description="Durable image variant job queue"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser(
        "worker", parents=[common], help="Run a worker pool against the queue"
    )
    worker_parser.add_argument("--concurrency", "-c", type=int, help="Jobs in flight")
    worker_parser.add_argument("--poll-interval", type=float, help="Idle poll interval (s)")
    worker_parser.add_argument(
        "--stale-after", type=int, help="Reset jobs claimed longer ago than this (s)"
    )
    worker_parser.add_argument(
        "--once", action="store_true", help="Exit when the queue is empty"
    )

    # SWEEP
    sweep_parser = subparsers.add_parser(
        "sweep", parents=[common], help="Reset stale in-flight jobs once"
    )
    sweep_parser.add_argument(
        "--stale-after", type=int, help="Reset jobs claimed longer ago than this (s)"
    )

    # INGEST
    ingest_parser = subparsers.add_parser(
        "ingest", parents=[common], help="Store an image and enqueue its variants"
    )
    ingest_parser.add_argument("image", type=str, help="Image file to ingest")
    ingest_parser.add_argument("--project-id", required=True, help="Owning project id")
    ingest_parser.add_argument("--project-name", required=True, help="Owning project name")
    ingest_parser.add_argument(
        "--settings", "-s", required=True, help="YAML file with the project's variants"
    )

    # REQUEST (lazy)
    request_parser = subparsers.add_parser(
        "request", parents=[common], help="Request one variant, enqueueing it if missing"
    )
    request_parser.add_argument("file_id", type=str, help="File id (upload id)")
    request_parser.add_argument("variant", type=str, help="Variant name")
    request_parser.add_argument(
        "--settings", "-s", required=True, help="YAML file with the project's variants"
    )

    # FILE
    file_parser = subparsers.add_parser("file", parents=[common], help="Show a file record")
    file_parser.add_argument("file_id", type=str, help="File id (upload id)")
    file_parser.add_argument("--presign", action="store_true", help="Print presigned URLs")

    # CHECK
    subparsers.add_parser("check", help="Verify image encoders")

    # QUEUE subcommands (status, process, retry, verify)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", parents=[common], help="Show queue status")

    queue_process_parser = queue_subparsers.add_parser(
        "process", parents=[common], help="Process pending jobs, then exit"
    )
    queue_process_parser.add_argument("--concurrency", "-c", type=int, help="Jobs in flight")

    retry_parser = queue_subparsers.add_parser(
        "retry", parents=[common], help="Resubmit failed jobs"
    )
    retry_parser.add_argument("--job", type=str, help="Only resubmit this job")

    verify_parser = queue_subparsers.add_parser(
        "verify", parents=[common], help="Check stored variants against recorded digests"
    )
    verify_parser.add_argument("job_id", type=str, help="Job id")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "check":
        print("Checking image encoders...")
        formats = transcoder.supported_formats()
        for fmt, available in formats.items():
            print(f"{'✅' if available else '❌'} {fmt}")
        if not all(formats[f] for f in ("jpeg", "png", "webp")):
            sys.exit(1)
        return

    if args.command == "queue" and args.queue_command is None:
        queue_parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict)
    except ValidationError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)
    config_lib.configure_logging(conf.logging.level)

    try:
        _dispatch(args, conf)
    except PipelineError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _dispatch(args, conf) -> None:
    if args.command == "worker":
        run_worker(conf, once=args.once)
        return

    store = ingest.build_job_store(conf.database, conf.worker.concurrency)
    try:
        if args.command == "sweep":
            count = RecoverySweep(store, stale_after_s=conf.worker.stale_after_s).run_once()
            print(f"Reset {count} stale job(s)")

        elif args.command == "ingest":
            objects = build_object_store(conf.storage)
            image_path = Path(args.image)
            result = ingest.ingest_image(
                store,
                objects,
                image_path.read_bytes(),
                filename=image_path.name,
                project_id=args.project_id,
                project_name=args.project_name,
                variant_defs=_load_settings(args.settings),
            )
            rows = [("File", result.file.id), ("Original", result.file.storage_key)]
            rows += [(name, key) for name, key in result.file.planned_variants.items()]
            rows.append(("Job", result.job.id if result.job else "none"))
            _print_block("INGESTED", rows)

        elif args.command == "request":
            lookup = ingest.request_variant(
                store, args.file_id, args.variant, _load_settings(args.settings)
            )
            if lookup.ready:
                print(f"Ready: {lookup.key}")
            else:
                print(f"Pending (job {lookup.job.id}); serve {lookup.key} meanwhile")

        elif args.command == "file":
            file = store.get_file(args.file_id)
            if file is None:
                raise PipelineError(f"Unknown file: {args.file_id}")
            rows = [
                ("Status", file.status),
                ("Original", file.storage_key),
                ("Size", f"{file.width}x{file.height}, {file.size} bytes"),
            ]
            for name in sorted(file.planned_variants):
                rows.append((name, file.variants.get(name, "(pending)")))
            _print_block(f"FILE {file.id}", rows)
            if args.presign:
                objects = build_object_store(conf.storage)
                urls = ingest.presigned_variants(file, objects, conf.storage.presign_ttl_s)
                for name, url in urls.items():
                    print(f"{name}: {url}")

        elif args.command == "queue":
            _dispatch_queue(args, conf, store)
    finally:
        store.close()


def _dispatch_queue(args, conf, store) -> None:
    if args.queue_command == "status":
        stats = ingest.get_queue_stats(store)
        _print_block(
            "QUEUE STATUS",
            [
                ("Pending", stats["pending"]),
                ("Processing", stats["processing"]),
                ("Completed", stats["completed"]),
                ("Failed", stats["failed"]),
                ("Total", stats["total"]),
            ],
        )

    elif args.queue_command == "process":
        objects = build_object_store(conf.storage)
        stats = ingest.process_queue(store, objects, concurrency=conf.worker.concurrency)
        _print_block(
            "PROCESSING SUMMARY",
            [
                ("Completed", stats["completed"]),
                ("Failed", stats["failed"]),
                ("Claim lost", stats["claim_lost"]),
                ("Total duration", f"{stats['total_duration']:.2f}s"),
            ],
        )

    elif args.queue_command == "retry":
        jobs = ingest.resubmit_failed(store, getattr(args, "job", None))
        print(f"Resubmitted {len(jobs)} failed job(s)")

    elif args.queue_command == "verify":
        objects = build_object_store(conf.storage)
        ok, problems = ingest.verify_job_outputs(store, objects, args.job_id)
        if ok:
            print("✅ All variants match their recorded digests")
        else:
            for problem in problems:
                print(f"❌ {problem}")
            sys.exit(1)


if __name__ == "__main__":
    main()
