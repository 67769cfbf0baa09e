"""Run one expiry sweep + notification tick immediately.

Useful to check Telegram routing without waiting for the scheduler:
  sweep expired -> select due signals -> deliver -> mark notified
"""
from accountability_engine.db import get_connection, initialize_database
from accountability_engine.engine import build_services
from accountability_engine.logging_config import configure_logging
from accountability_engine.settings import settings


def main():
    configure_logging(settings.log_level)
    print("=" * 60)
    print("NOTIFICATION TICK -- one shot")
    print(f"Timezone:        {settings.timezone}")
    print(f"Repeat interval: {settings.repeat_interval_minutes} min")
    print(f"Telegram:        {'configured' if settings.telegram_bot_token else 'NOT configured'}")
    print("=" * 60)

    initialize_database()
    services = build_services()
    report = services.notifications.run_tick()

    if not report.ran:
        print(f"\nTick skipped: {report.reason}")
    else:
        print(
            f"\nExpired {report.expired}, selected {report.selected}, delivered {len(report.delivered)}, "
            f"failed {len(report.failed)}, skipped {len(report.skipped)}"
        )

    with get_connection() as conn:
        rows = conn.execute(
            "SELECT status, COUNT(1) AS n FROM trade_signals GROUP BY status ORDER BY status"
        ).fetchall()

    if rows:
        print("\nSignals by status:")
        for row in rows:
            print(f"  {row['status']:10s} {row['n']}")
    else:
        print("\nNo signals stored.")


if __name__ == "__main__":
    main()
