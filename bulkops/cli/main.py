"""
BulkOps command line.

Usage examples:
    bulkops proxy                      # capture traffic (point the browser at it)
    bulkops status                     # show captured locations
    bulkops run --feature call-recording-retention --input '{"retention_days": 30}'
    bulkops record                     # arm recording, then perform the action once
    bulkops run --template --inject query --field locationId
    bulkops serve --with-proxy         # HTTP control surface
"""

import argparse
import json
import sys
from typing import List, Optional

from pydantic import ValidationError

from bulkops.base.config import get_config, setup_logging
from bulkops.base.session import CaptureSession
from bulkops.contracts import BulkRequest
from bulkops.errors import BulkOpsError
from bulkops.executor.actions import InjectionRule, list_features
from bulkops.executor.models import BatchProgress, BatchRun
from bulkops.utils.async_helpers import run_sync

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bulkops", description="Bulk operations helper")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("proxy", help="Run the capture proxy until interrupted")
    sub.add_parser("status", help="Show captured state")
    sub.add_parser("reset", help="Forget captured credentials, targets and template")
    sub.add_parser("features", help="List built-in bulk actions")

    record = sub.add_parser("record", help="Arm (or disarm) action recording")
    record.add_argument("--off", action="store_true", help="Disarm instead of arm")

    run = sub.add_parser("run", help="Run a bulk operation")
    action = run.add_mutually_exclusive_group(required=True)
    action.add_argument("--feature", help="Built-in feature name")
    action.add_argument("--template", action="store_true", help="Replay the recorded action")
    run.add_argument("--input", default="{}", help="Payload builder input as JSON")
    run.add_argument("--method", help="Override the HTTP method")
    run.add_argument("--query-param", help="Override the query parameter carrying the id")
    run.add_argument("--inject", choices=[r.value for r in InjectionRule], help="Where the id goes (template runs)")
    run.add_argument("--field", help="Query parameter or dotted body field for the id")
    run.add_argument("--placeholder", help="Id present in the recorded url path to replace")
    run.add_argument("--ids", help="Comma-separated ids (default: captured targets)")
    run.add_argument("--batch-size", type=int)
    run.add_argument("--delay-ms", type=int)

    serve = sub.add_parser("serve", help="Start the HTTP control surface")
    serve.add_argument("--with-proxy", action="store_true", help="Also start the capture proxy")

    return parser

def _request_from_args(args: argparse.Namespace) -> BulkRequest:
    try:
        payload_input = json.loads(args.input)
    except ValueError as e:
        raise SystemExit(f"--input is not valid JSON: {e}")
    return BulkRequest(
        target_ids=args.ids.split(",") if args.ids else None,
        feature=args.feature,
        use_template=bool(args.template),
        payload_input=payload_input,
        method=args.method,
        query_param=args.query_param,
        injection=InjectionRule(args.inject) if args.inject else None,
        injection_field=args.field,
        placeholder=args.placeholder,
        batch_size=args.batch_size,
        inter_batch_delay_ms=args.delay_ms,
    )

def _print_run(run: BatchRun) -> None:
    print(f"Completed! {run.describe()}")
    for failure in run.failures:
        print(f"  FAILED  {failure.target_id}: {failure.message}")
    for target_id in run.skipped:
        print(f"  SKIPPED {target_id}")

def _print_progress(progress: BatchProgress) -> None:
    print(f"Processed batch {progress.index + 1}/{progress.total}...")

async def _run_proxy(session: CaptureSession) -> None:
    proxy = await session.start_proxy()
    print(f"Capture proxy on {proxy.host}:{proxy.port}. Configure the browser to use it; Ctrl+C to stop.")
    try:
        await proxy.wait()
    finally:
        session.stop_proxy()

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config)

    if args.command == "serve":
        import uvicorn
        from bulkops.server.api import create_app

        uvicorn.run(
            create_app(start_proxy=args.with_proxy),
            host=config.api_host,
            port=config.api_port,
        )
        return 0

    session = CaptureSession(config)

    try:
        if args.command == "proxy":
            session.set_external_log_sink(print)
            try:
                run_sync(_run_proxy(session))
            except KeyboardInterrupt:
                pass
        elif args.command == "status":
            print(json.dumps(session.to_dict(), indent=2, default=str))
        elif args.command == "reset":
            session.store.reset()
            print("Captured state cleared.")
        elif args.command == "features":
            for feature in list_features():
                print(f"{feature['name']:<28} {feature['method']:<6} {feature['description']}")
        elif args.command == "record":
            session.set_recording(not args.off)
            print("Recording armed." if not args.off else "Recording disarmed.")
        elif args.command == "run":
            try:
                request = _request_from_args(args)
            except ValidationError as e:
                print(f"Invalid request: {e}", file=sys.stderr)
                return 2
            run = run_sync(session.run_bulk(request, on_batch=_print_progress))
            _print_run(run)
            return 1 if run.failed else 0
    except BulkOpsError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
