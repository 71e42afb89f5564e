"""Authoritative ride snapshot fetches.

Fetch outcomes are returned as values so the state machine never sees
an exception: a ``Ride`` on success, otherwise one of the failure
results below.
"""

import logging
from dataclasses import dataclass

from ridesync.api_client import RideApiClient
from ridesync.core.exceptions import (
    NotFoundError,
    TransientError,
    Unauthorized,
    ValidationError,
)
from ridesync.core.retry import RetryConfig, with_retry
from ridesync.ride import Ride

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RideNotFound:
    ride_id: str
    message: str = ""


@dataclass(frozen=True)
class FetchUnauthorized:
    ride_id: str
    message: str = ""


@dataclass(frozen=True)
class FetchTransportError:
    ride_id: str
    message: str = ""
    attempts: int = 1


FetchResult = Ride | RideNotFound | FetchUnauthorized | FetchTransportError


class RideSnapshotFetcher:
    """Pulls the authoritative ride record, always round-tripping."""

    def __init__(self, api: RideApiClient, retry: RetryConfig | None = None):
        self._api = api
        self._retry = retry or RetryConfig()

    async def fetch_ride(self, ride_id: str, token: str) -> FetchResult:
        """One attempt; failures come back as result values."""
        try:
            return await self._api.get_ride(ride_id, token)
        except NotFoundError as e:
            return RideNotFound(ride_id, e.message)
        except Unauthorized as e:
            return FetchUnauthorized(ride_id, e.message)
        except (TransientError, ValidationError) as e:
            return FetchTransportError(ride_id, e.message)

    async def fetch_ride_with_retry(self, ride_id: str, token: str) -> FetchResult:
        """Retry transport failures up to the configured attempts before giving up."""
        attempts = 0

        async def _attempt() -> Ride:
            nonlocal attempts
            attempts += 1
            return await self._api.get_ride(ride_id, token)

        try:
            return await with_retry(_attempt, self._retry, operation_name=f"fetch_ride {ride_id}")
        except NotFoundError as e:
            return RideNotFound(ride_id, e.message)
        except Unauthorized as e:
            return FetchUnauthorized(ride_id, e.message)
        except TransientError as e:
            return FetchTransportError(ride_id, e.message, attempts=attempts)
        except ValidationError as e:
            logger.warning(f"Ride {ride_id} snapshot is malformed: {e.message}")
            return FetchTransportError(ride_id, e.message, attempts=attempts)
