import argparse

from commercepix.db import init_db
from commercepix.worker import sweep_stale_jobs


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Fail generation jobs stuck in queued or running.")
    parser.add_argument("--max-age-sec", type=int, default=None, help="defaults to JOB_TIMEOUT_SEC")
    args = parser.parse_args(argv)

    init_db()
    swept = sweep_stale_jobs(max_age_sec=args.max_age_sec)
    for job_id in swept:
        print(job_id)
    print(f"Stale jobs failed: {len(swept)}")


if __name__ == "__main__":
    main()
