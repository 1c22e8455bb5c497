"""CLI replaying a seeded intake run on virtual time."""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Sequence

from octodoc.config import Settings, get_settings
from octodoc.engine import build_engine
from octodoc.models import FileMeta
from octodoc.scheduling import VirtualScheduler
from octodoc.storage.backends import MemoryRecordBackend


@dataclass(frozen=True)
class SimulationResult:
    seed: int
    loan_type: str
    virtual_seconds: float
    jobs: List[dict]
    analytics: dict

    def to_dict(self) -> dict:
        return {
            "seed": self.seed,
            "loan_type": self.loan_type,
            "virtual_seconds": self.virtual_seconds,
            "jobs": self.jobs,
            "analytics": self.analytics,
        }

    def replay_key(self) -> list[dict]:
        """Id-free projection of the run; equal for identical seeds."""

        return [{key: value for key, value in job.items() if key not in {"job_id", "document_id"}} for job in self.jobs]


async def _simulate(seed: int, documents: int, loan_type: str, settings: Settings) -> SimulationResult:
    scheduler = VirtualScheduler()
    engine = build_engine(
        settings,
        scheduler=scheduler,
        primary_backend=MemoryRecordBackend("primary-store", now=scheduler.now),
        cache_backend=MemoryRecordBackend("cache", now=scheduler.now),
    )
    try:
        session = await engine.sessions.start(loan_type, applicant_name="Replay Borrower")
        checklist = [item.id for item in session.required_checklist] or ["other"]
        sizes = random.Random(seed)
        job_ids: list[str] = []
        for index in range(documents):
            document_type = checklist[index % len(checklist)]
            job = await engine.pipeline.submit(
                session.id,
                FileMeta(
                    original_name=f"{document_type}-{index + 1}.pdf",
                    size_bytes=sizes.randint(4 * 1024, 4 * 1024 * 1024),
                    mime_type="application/pdf",
                    document_type=document_type,
                ),
            )
            job_ids.append(job.id)
        await scheduler.run_until_idle()

        jobs: list[dict[str, Any]] = []
        for job_id in job_ids:
            snapshot = engine.pipeline.status(job_id)
            history = engine.pipeline.history(job_id)
            started = history[0].at
            jobs.append(
                {
                    "job_id": snapshot.job_id,
                    "document_id": snapshot.document_id,
                    "file_name": snapshot.original_name,
                    "stages": [transition.stage.value for transition in history],
                    "offsets": [round((transition.at - started).total_seconds(), 6) for transition in history],
                    "status": snapshot.status,
                    "result": snapshot.result.to_dict() if snapshot.result else None,
                    "failure_reason": snapshot.failure_reason,
                },
            )
        analytics = engine.stream.analytics(session.id)
        return SimulationResult(
            seed=seed,
            loan_type=loan_type,
            virtual_seconds=round(scheduler.elapsed, 6),
            jobs=jobs,
            analytics=analytics,
        )
    finally:
        await engine.shutdown()


def run_simulation(
    *,
    seed: int,
    documents: int,
    loan_type: str = "504",
    settings: Settings | None = None,
) -> SimulationResult:
    if documents < 1:
        raise ValueError("documents must be >= 1")
    base = settings or get_settings()
    overrides = base.model_dump()
    overrides.update({"pipeline_seed": seed, "primary_store_url": None, "cache_url": None})
    effective = Settings(**overrides)
    return asyncio.run(_simulate(seed, documents, loan_type, effective))


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a seeded OctoDoc intake run on virtual time.")
    parser.add_argument("--seed", type=int, required=True, help="Pipeline seed")
    parser.add_argument("--documents", type=int, default=3, help="Number of documents to submit")
    parser.add_argument("--loan-type", type=str, default="504", choices=("504", "5a"), help="Loan program")
    parser.add_argument(
        "--replay-check",
        action="store_true",
        help="Run twice and fail if the two runs differ",
    )
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON report")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = get_settings()
    result = run_simulation(seed=args.seed, documents=args.documents, loan_type=args.loan_type, settings=settings)
    report = json.dumps(result.to_dict(), indent=2)
    print(report)
    if args.output:
        args.output.write_text(report, encoding="utf-8")

    if args.replay_check:
        again = run_simulation(seed=args.seed, documents=args.documents, loan_type=args.loan_type, settings=settings)
        if again.replay_key() != result.replay_key():
            print(f"Replay check failed: seed {args.seed} produced different runs", file=sys.stderr)
            return 1
        print(f"Replay check passed for seed {args.seed}.", file=sys.stderr)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
