#!/usr/bin/env python3
"""
Example scheduled job for the trip sync core.

Each invocation polls live positions once, then runs one trip sync batch.
Run it from cron or any scheduler; all coordination state lives in the store,
so overlapping or back-to-back invocations are safe.
"""

import logging
import sys

from fleet_trip_sync import (
    PositionPoller,
    RateLimited,
    TripSyncEngine,
    load_config,
    setup_logger,
)

logger = logging.getLogger(__name__)


def main(config_path: str = 'config/sync_config.yaml') -> int:
    """Run one poll and one sync batch. Returns a process exit code."""
    config = load_config(config_path)
    setup_logger(config=config.logging)

    try:
        with PositionPoller.from_config(config) as poller:
            poll_report = poller.poll()
        logger.info(
            'Polled %d positions (%d rejected)',
            poll_report.positions_normalized,
            poll_report.records_rejected,
        )
    except RateLimited as error:
        logger.warning(
            'Position poll rate limited; retry in %.0fs', error.retry_after_seconds
        )
        return 0

    with TripSyncEngine.from_config(config) as engine:
        report = engine.run()

        for result in report.devices:
            logger.info(
                '%s: %s, %d inserted, %d duplicates',
                result.device_id,
                result.outcome.value,
                result.trips_inserted,
                result.duplicates_skipped,
            )

        if report.rate_limited:
            logger.warning(
                'Run stopped by rate limit; retry in %.0fs', report.retry_after_seconds
            )

        trips = engine.trips_dataframe()
        if not trips.empty:
            print(trips.tail())

    return 1 if report.failed_devices and not report.rate_limited else 0


if __name__ == '__main__':
    sys.exit(main(*sys.argv[1:2]))
