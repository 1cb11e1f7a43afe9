import argparse
import signal
import sys
import threading
from pathlib import Path

from .config import configure_logging, resolve_config
from .errors import PipelineError
from .ffmpeg_runner import check_ffmpeg
from .queue.models import ProcessingState


def _build_service(args):
    from .service import IngestService

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict)
    configure_logging(config)
    return IngestService(config)


def _print_status(status):
    print("\n" + "=" * 60)
    print(f"VIDEO {status.video_id}")
    print("=" * 60)
    print(f"State:                {status.processing_state}")
    print(f"Progress:             {status.progress_percent}%")
    print(f"Step:                 {status.processing_step or '-'}")
    position = "-" if status.queue_position is None else status.queue_position
    print(f"Queue position:       {position}")
    print(f"Attempts:             {status.attempt_count}")
    if status.hls_ready:
        print(f"Manifest:             {status.hls_path}")
    if status.last_error:
        print(f"Last error:           {status.last_error}")
    print("=" * 60)


def _print_queue_stats(stats):
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Queued:               {stats.get('Queued', 0)}")
    active = sum(stats.get(s, 0) for s in ("Uploading", "Transcoding", "Packaging"))
    print(f"In progress:          {active}")
    print(f"Ready:                {stats.get('Ready', 0)}")
    print(f"Failed:               {stats.get('Failed', 0)}")
    print(f"Deleted:              {stats.get('Deleted', 0)}")
    print("=" * 60)


def _run_worker(service):
    """Recovery + purge scheduler + worker loop until SIGINT/SIGTERM."""
    stop = threading.Event()

    def _handle(signum, frame):
        print("\nShutting down...")
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    service.start()
    print(f"Worker {service.worker.worker_id} running. Press Ctrl+C to stop.")
    try:
        while not stop.wait(1.0):
            pass
    finally:
        service.stop()


def _dispatch(args, parser, queue_parser):
    if args.command == "check":
        print("Checking dependencies...")
        if check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)
        service = _build_service(args)
        for key, value in service.describe().items():
            print(f"{key + ':':<22}{value}")
        return

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        service = _build_service(args)
        uvicorn.run(
            create_app(service),
            host=args.host or service.config.api.host,
            port=args.port or service.config.api.port,
        )
        return

    if args.command is None:
        parser.print_help()
        return

    if args.command == "queue" and args.queue_command is None:
        queue_parser.print_help()
        return

    service = _build_service(args)

    if args.command == "enqueue":
        if args.key:
            location, size = args.source, 0
        else:
            path = Path(args.source).resolve()
            if not path.is_file():
                print(f"Error: file not found: {args.source}")
                sys.exit(1)
            location, size = path.as_uri(), path.stat().st_size
        video_id = service.enqueue_upload(
            tenant=args.tenant,
            source_location=location,
            filename=args.filename or Path(args.source).name,
            actor_id=args.actor,
            replaces_video_id=args.replaces,
            size=size,
        )
        print(f"Queued video {video_id}")
        _print_status(service.get_processing_status(video_id))

    elif args.command == "status":
        _print_status(service.get_processing_status(args.video_id))

    elif args.command == "versions":
        versions = service.list_versions(args.group_id)
        print(f"\nVersion group {args.group_id}: {len(versions)} version(s)")
        for v in versions:
            marker = "*" if v.is_active_version else " "
            print(f" {marker} v{v.version_number:<3} {v.id}  {v.processing_state:<12} {v.filename}")

    elif args.command == "list":
        for v in service.list_videos(args.tenant):
            print(f"{v.id}  v{v.version_number:<3} {v.processing_state:<12} "
                  f"{v.progress_percent:>3}%  {v.filename}")

    elif args.command == "delete":
        backup = service.soft_delete(args.video_id, args.actor)
        print(f"Deleted {args.video_id}; restorable until {backup.purge_at.isoformat()}")

    elif args.command == "restore":
        video = service.restore(args.video_id)
        print(f"Restored {video.id} ({video.filename})")

    elif args.command == "deleted":
        backups = service.list_deleted(args.tenant)
        print(f"\nRecently deleted in {args.tenant}: {len(backups)}")
        for b in backups:
            print(f"  {b.video_id}  {b.filename}  purge at {b.purge_at.isoformat()}")

    elif args.command == "recover":
        if args.stale:
            count = service.recovery.reset_stale_claims()
            print(f"Reset {count} stale claim(s)")
        else:
            count = service.recovery.recover()
            print(f"{count} video(s) waiting in queue after recovery")

    elif args.command == "purge":
        print(f"Purged {service.purge_expired()} video(s)")

    elif args.command == "worker":
        _run_worker(service)

    elif args.command == "queue":
        if args.queue_command == "status":
            _print_queue_stats(service.queue_stats())

        elif args.queue_command == "process":
            service.recovery.recover()
            counts = service.worker.drain(max_jobs=args.max_jobs)
            print("\n" + "=" * 60)
            print("PROCESSING SUMMARY")
            print("=" * 60)
            print(f"Ready:                {counts.get(ProcessingState.READY.value, 0)}")
            print(f"Failed:               {counts.get(ProcessingState.FAILED.value, 0)}")
            print("=" * 60)

        elif args.queue_command == "retry":
            ids = args.video_ids or [
                v.id for v in service.store.list_by_state((ProcessingState.FAILED.value,))
            ]
            for video_id in ids:
                service.retry(video_id)
            print(f"Re-queued {len(ids)} failed video(s)")


def main():
    parser = argparse.ArgumentParser(
        prog="hls-ingest", description="Video ingestion and HLS transcoding pipeline"
    )
    parser.add_argument("--db", type=str, help="Record store database path")
    parser.add_argument("--storage-root", type=str, help="Use local object storage at this path")
    parser.add_argument("--log-level", type=str, help="Logging level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CHECK
    subparsers.add_parser("check", help="Verify ffmpeg and show storage/database settings")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Register an upload and queue it")
    enqueue_parser.add_argument("source", type=str, help="Local video file (or object key with --key)")
    enqueue_parser.add_argument("--tenant", "-t", type=str, required=True, help="Tenant bucket")
    enqueue_parser.add_argument("--key", action="store_true", help="SOURCE is an existing object key")
    enqueue_parser.add_argument("--filename", type=str, help="Display name (default: source name)")
    enqueue_parser.add_argument("--replaces", type=str, help="Video id this upload supersedes")
    enqueue_parser.add_argument("--actor", type=str, help="Uploader id")

    # STATUS / LIST / VERSIONS
    status_parser = subparsers.add_parser("status", help="Show processing status of a video")
    status_parser.add_argument("video_id", type=str)

    list_parser = subparsers.add_parser("list", help="List live videos of a tenant")
    list_parser.add_argument("--tenant", "-t", type=str, required=True)

    versions_parser = subparsers.add_parser("versions", help="List versions in a version group")
    versions_parser.add_argument("group_id", type=str)

    # DELETION LIFECYCLE
    delete_parser = subparsers.add_parser("delete", help="Soft delete a Ready/Failed video")
    delete_parser.add_argument("video_id", type=str)
    delete_parser.add_argument("--actor", type=str, help="Who deleted it")
    delete_parser.add_argument("--retention-days", type=float, help="Override retention window")

    restore_parser = subparsers.add_parser("restore", help="Restore a soft-deleted video")
    restore_parser.add_argument("video_id", type=str)

    deleted_parser = subparsers.add_parser("deleted", help="List recently deleted videos")
    deleted_parser.add_argument("--tenant", "-t", type=str, required=True)

    subparsers.add_parser("purge", help="Purge videos past their retention window")

    # RECOVERY / WORKER / SERVER
    recover_parser = subparsers.add_parser("recover", help="Re-queue interrupted videos")
    recover_parser.add_argument(
        "--stale", action="store_true", help="Only reset claims with an expired heartbeat"
    )

    subparsers.add_parser("worker", help="Run recovery, purge scheduler and the worker loop")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with background worker")
    serve_parser.add_argument("--host", type=str)
    serve_parser.add_argument("--port", type=int)

    # QUEUE subcommands (status, process, retry)
    queue_parser = subparsers.add_parser("queue", help="Manage the processing queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", help="Show queue status")

    queue_process_parser = queue_subparsers.add_parser(
        "process", help="Process queued videos in the foreground, then exit"
    )
    queue_process_parser.add_argument(
        "--max-jobs", type=int, help="Maximum number of videos to process"
    )

    retry_parser = queue_subparsers.add_parser("retry", help="Re-queue failed videos")
    retry_parser.add_argument("video_ids", nargs="*", help="Specific ids (default: all failed)")

    args = parser.parse_args()

    try:
        _dispatch(args, parser, queue_parser)
    except PipelineError as e:
        print(f"Error [{e.code}]: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
