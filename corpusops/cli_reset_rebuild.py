from __future__ import annotations

import argparse

import orjson

from .audit import assert_flush_allowed
from .errors import AuditBlockedError, JobStateError
from .migration import migrate_legacy_layout
from .runtime import open_runtime

JOB_KIND = "RESET_REBUILD"


def _emit(obj) -> None:
    print(orjson.dumps(obj, option=orjson.OPT_SORT_KEYS | orjson.OPT_INDENT_2).decode())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reset and rebuild the corpus")
    sub = parser.add_subparsers(dest="command", required=True)
    p_start = sub.add_parser("start", help="Preflight, flush, rebuild and verify")
    p_start.add_argument("--confirm", default="", help="Confirmation token: 'FLUSH <target_id>'")
    p_start.add_argument("--scope", default="GLOBAL")
    p_resume = sub.add_parser("resume", help="Continue a STOPPED or PARTIAL job from its rebuild position")
    p_resume.add_argument("job_id")
    p_stop = sub.add_parser("stop", help="Ask a running job to stop after its current category")
    p_stop.add_argument("job_id")
    p_show = sub.add_parser("show", help="Print a job record")
    p_show.add_argument("job_id", nargs="?", help="Defaults to the latest GLOBAL job")
    args = parser.parse_args(argv)

    with open_runtime() as rt:
        if args.command == "show":
            job = rt.jobs.get_job(args.job_id) if args.job_id else rt.jobs.get_latest_job_for_scope("GLOBAL", JOB_KIND)
            if job is None:
                _emit({"ok": False, "error": "job not found"})
                return 2
            _emit(job.model_dump())
            return 0

        if args.command == "stop":
            try:
                accepted = rt.jobs.request_stop(args.job_id)
            except JobStateError as e:
                _emit({"ok": False, "error": str(e)})
                return 2
            _emit({"ok": accepted, "job_id": args.job_id})
            return 0 if accepted else 1

        try:
            if args.command == "start":
                categories = rt.cfg.category_ids()
                migrate_legacy_layout(rt.store, categories, rt.snapshots.country, rt.snapshots.lang, ledger=rt.ledger)
                assert_flush_allowed(rt.audit.run_audit(categories))
                job_id = rt.jobs.start_job(JOB_KIND, args.scope)
                job = rt.orchestrator.run(job_id, confirmation_token=args.confirm)
            else:
                job = rt.orchestrator.run(args.job_id, resume_from_rebuild=True)
        except (AuditBlockedError, JobStateError) as e:
            _emit({"ok": False, "code": e.code, "error": str(e)})
            return 2

    _emit({
        "job_id": job.job_id,
        "status": job.status,
        "phase": job.phase,
        "message": job.message,
        "progress": job.progress.model_dump(),
        "failed_categories": job.failed_categories,
    })
    return 0 if job.status == "COMPLETED" else 1


if __name__ == "__main__":
    raise SystemExit(main())
