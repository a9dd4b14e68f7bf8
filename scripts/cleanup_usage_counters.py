from commercepix.db import init_db
from commercepix.rate_limit import cleanup_usage_counters


def main() -> None:
    init_db()
    removed = cleanup_usage_counters()
    print(f"Usage counters removed: {removed}")


if __name__ == "__main__":
    main()
