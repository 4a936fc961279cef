"""Admission Controller for DRIP faucet.

Decides accept/reject before any chain interaction:
- Destination address format and EIP-55 checksum
- Per-requester cooldown (sliding window from the last accepted request)
- Optional per-requester cap over a trailing 24 hours
- Global in-flight ceiling (backpressure)

Windows are kept in memory, or in Redis sorted sets when a Redis URL is
configured and reachable.
"""

import asyncio
import logging
import math
import re
import weakref
from collections.abc import Callable
from datetime import timedelta

from web3 import Web3

from .models import AdmissionDecision, AdmissionVerdict, DisbursementRequest

logger = logging.getLogger(__name__)

# Ethereum address pattern: 0x followed by 40 hex characters
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

DAY_SECONDS = 86400


def validate_address(address: str) -> bool:
    """Validate Ethereum address format and checksum.

    All-lowercase or all-uppercase hex is accepted as-is; mixed case must
    match the EIP-55 checksum.

    Parameters
    ----------
    address : str
        Address to validate.

    Returns
    -------
    bool
        True if the address is usable as a transfer destination.
    """
    if not ADDRESS_PATTERN.match(address):
        return False
    digits = address[2:]
    if digits == digits.lower() or digits == digits.upper():
        return True
    return Web3.is_checksum_address(address)


def _format_cooldown(seconds: int) -> str:
    """Format cooldown duration for user display."""
    if seconds < 60:
        return f"Please wait {seconds} seconds before next request"
    minutes = seconds // 60
    remaining_seconds = seconds % 60
    if remaining_seconds > 0:
        return f"Please wait {minutes}m {remaining_seconds}s before next request"
    return f"Please wait {minutes} minutes before next request"


class AdmissionController:
    """Accept/reject policy for disbursement requests.

    Parameters
    ----------
    cooldown_seconds : int
        Minimum time between two accepted requests of the same requester.
    max_in_flight : int
        Ceiling on admitted but unfinished jobs.
    in_flight : Callable[[], int]
        Returns the current number of admitted, non-terminal jobs.
    daily_limit : int | None
        Maximum accepted requests per requester in any 24 hour window.
    redis_url : str | None
        Redis connection URL. If None, uses in-memory storage.
    """

    def __init__(
        self,
        cooldown_seconds: int,
        max_in_flight: int,
        in_flight: Callable[[], int],
        daily_limit: int | None = None,
        redis_url: str | None = None,
    ):
        self._cooldown_seconds = cooldown_seconds
        self._max_in_flight = max_in_flight
        self._in_flight = in_flight
        self._daily_limit = daily_limit
        self._horizon = max(cooldown_seconds, DAY_SECONDS if daily_limit else 0)
        self._redis = None  # Redis instance or None

        # In-memory storage: requester -> [(timestamp, request_id)] sorted by timestamp
        self._memory_windows: dict[str, list[tuple[float, str]]] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        if redis_url:
            self._init_redis(redis_url)

    def _init_redis(self, redis_url: str) -> None:
        """Initialize Redis connection."""
        try:
            from redis import Redis

            self._redis = Redis.from_url(redis_url, decode_responses=True)
            self._redis.ping()
            logger.info("Redis connected for admission windows", extra={"url": redis_url})
        except Exception as e:
            logger.warning(
                "Redis connection failed, using in-memory admission windows",
                extra={"error": str(e)},
            )
            self._redis = None

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @staticmethod
    def _window_key(requester: str) -> str:
        return f"drip:window:{requester}"

    def _lock_for(self, requester: str) -> asyncio.Lock:
        lock = self._locks.get(requester)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[requester] = lock
        return lock

    def _load_window(self, requester: str, now: float) -> list[tuple[float, str]]:
        """Return the requester's accepted timestamps, pruning expired ones."""
        cutoff = now - self._horizon
        if self._redis:
            key = self._window_key(requester)
            self._redis.zremrangebyscore(key, "-inf", f"({cutoff}")
            entries = self._redis.zrange(key, 0, -1, withscores=True)
            return [(float(score), member) for member, score in entries]

        window = [entry for entry in self._memory_windows.get(requester, []) if entry[0] >= cutoff]
        if window:
            self._memory_windows[requester] = window
        else:
            self._memory_windows.pop(requester, None)
        return window

    def _record(self, requester: str, timestamp: float, request_id: str) -> None:
        if self._redis:
            key = self._window_key(requester)
            pipe = self._redis.pipeline()
            pipe.zadd(key, {request_id: timestamp})
            pipe.expire(key, max(1, math.ceil(self._horizon)))
            pipe.execute()
            return

        window = self._memory_windows.setdefault(requester, [])
        window.append((timestamp, request_id))
        window.sort()

    def _reject(
        self,
        request: DisbursementRequest,
        verdict: AdmissionVerdict,
        reason: str,
        retry_after: int | None = None,
    ) -> AdmissionDecision:
        return AdmissionDecision(
            request=request, verdict=verdict, reason=reason, retry_after=retry_after
        )

    async def decide(self, request: DisbursementRequest) -> AdmissionDecision:
        """Decide whether a request may enter the dispatch queue.

        An accepted request is recorded in the requester's window before
        returning, so two concurrent requests from the same requester cannot
        both pass the cooldown check.

        Parameters
        ----------
        request : DisbursementRequest
            The request to judge. Its ``submitted_at`` is the admission time.

        Returns
        -------
        AdmissionDecision
            The verdict, with a human-readable reason for rejections.
        """
        if not validate_address(request.destination):
            return self._reject(
                request,
                AdmissionVerdict.REJECTED_INVALID_ADDRESS,
                f"Invalid address: {request.destination}",
            )

        async with self._lock_for(request.requester):
            now = request.submitted_at
            window = self._load_window(request.requester, now)

            if window and self._cooldown_seconds > 0:
                elapsed = now - window[-1][0]
                if elapsed < self._cooldown_seconds:
                    retry_after = max(1, math.ceil(self._cooldown_seconds - elapsed))
                    return self._reject(
                        request,
                        AdmissionVerdict.REJECTED_RATE_LIMITED,
                        _format_cooldown(retry_after),
                        retry_after,
                    )

            if self._daily_limit is not None:
                today = [ts for ts, _ in window if ts > now - DAY_SECONDS]
                if len(today) >= self._daily_limit:
                    retry_after = max(1, math.ceil(today[0] + DAY_SECONDS - now))
                    return self._reject(
                        request,
                        AdmissionVerdict.REJECTED_RATE_LIMITED,
                        "Daily request limit reached",
                        retry_after,
                    )

            depth = self._in_flight()
            if depth >= self._max_in_flight:
                logger.warning(
                    "Backpressure: in-flight ceiling reached",
                    extra={
                        "requester": request.requester,
                        "in_flight": depth,
                        "ceiling": self._max_in_flight,
                    },
                )
                return self._reject(
                    request,
                    AdmissionVerdict.REJECTED_BACKPRESSURE,
                    "The faucet is busy, please try again shortly",
                )

            self._record(request.requester, now, request.request_id)

        logger.debug(
            "Request admitted",
            extra={"requester": request.requester, "request_id": request.request_id},
        )
        return AdmissionDecision(request=request, verdict=AdmissionVerdict.ACCEPTED)

    async def refund(self, request: DisbursementRequest) -> None:
        """Forget an accepted request so it does not count against the requester.

        Used when a disbursement ends in a terminal failure.
        """
        async with self._lock_for(request.requester):
            if self._redis:
                self._redis.zrem(self._window_key(request.requester), request.request_id)
            else:
                window = self._memory_windows.get(request.requester, [])
                window[:] = [entry for entry in window if entry[1] != request.request_id]
                if not window:
                    self._memory_windows.pop(request.requester, None)

        logger.info(
            "Admission refunded",
            extra={"requester": request.requester, "request_id": request.request_id},
        )

    def get_cooldown(self, requester: str, now: float) -> timedelta | None:
        """Get cooldown time remaining.

        Returns
        -------
        timedelta | None
            Time until next request allowed, or None if no cooldown.
        """
        window = self._load_window(requester, now)
        if not window or self._cooldown_seconds <= 0:
            return None
        remaining = self._cooldown_seconds - (now - window[-1][0])
        if remaining <= 0:
            return None
        return timedelta(seconds=math.ceil(remaining))

    def get_remaining(self, requester: str, now: float) -> int | None:
        """Get remaining requests in the trailing 24 hours, or None without a cap."""
        if self._daily_limit is None:
            return None
        window = self._load_window(requester, now)
        used = sum(1 for ts, _ in window if ts > now - DAY_SECONDS)
        return max(0, self._daily_limit - used)

    def reset_requester(self, requester: str) -> None:
        """Reset the admission window for a requester (admin function)."""
        if self._redis:
            self._redis.delete(self._window_key(requester))
        else:
            self._memory_windows.pop(requester, None)

        logger.info("Admission window reset for requester", extra={"requester": requester})
