# fleet_trip_sync/common/__init__.py

from fleet_trip_sync.common.logger import setup_logger

__all__: list[str] = ['setup_logger']
