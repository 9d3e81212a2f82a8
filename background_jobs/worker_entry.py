"""Entrypoint for the blob deletion worker.

    python -m background_jobs.worker_entry
"""

from arq import run_worker

from background_jobs.arq_worker import WorkerSettings
from core_infrastructure.observability import configure_logging


def main() -> None:
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
