"""Auditor runtime.

Main loop: run every configured audit -> log summary -> sleep -> repeat.
Failed runs are retried with a growing backoff; the loop gives up after
too many consecutive failures. With poll_interval == 0 one cycle runs.
"""

from __future__ import annotations

import asyncio

import bittensor as bt

from .sync import RelaySync, RunResult, RunStatus


class AuditorRuntime:
    """Runs one or more RelaySync audits, optionally on a schedule."""

    def __init__(
        self,
        syncs: list[RelaySync],
        poll_interval: int = 0,
        max_consecutive_errors: int = 10,
    ):
        self.syncs = syncs
        self._poll_interval = poll_interval
        self._max_errors = max_consecutive_errors
        self._running = False
        self._stopped = asyncio.Event()
        self._active: RelaySync | None = None
        self.last_results: list[RunResult] = []
        self.gave_up = False

    async def run(self) -> list[RunResult]:
        """Main auditor loop. Returns the results of the last cycle."""
        self._running = True
        self._stopped.clear()
        self.gave_up = False
        bt.logging.info({
            "auditor_runtime": {
                "status": "starting",
                "poll_interval": self._poll_interval,
                "scopes": [s.scope for s in self.syncs],
            }
        })

        consecutive_errors = 0

        while self._running:
            failed = False
            try:
                results = await self._cycle()
                self.last_results = results
                failed = any(r.status == RunStatus.FAILED for r in results)
            except asyncio.CancelledError:
                break
            except Exception as e:
                bt.logging.error({"auditor_cycle_error": str(e), "consecutive": consecutive_errors + 1})
                failed = True

            if failed:
                consecutive_errors += 1
                if consecutive_errors >= self._max_errors:
                    bt.logging.error({"auditor_runtime": "too_many_errors, stopping"})
                    self.gave_up = True
                    break
                if not self._running:
                    break
                backoff = min(30, 5 * consecutive_errors)
                bt.logging.warning({"auditor_runtime": {"retry_in": backoff, "consecutive": consecutive_errors}})
                try:
                    await self._sleep(backoff)
                except asyncio.CancelledError:
                    break
                continue

            consecutive_errors = 0
            if self._poll_interval <= 0 or not self._running:
                break

            try:
                await self._sleep(self._poll_interval)
            except asyncio.CancelledError:
                break

        self._running = False
        bt.logging.info({"auditor_runtime": "stopped"})
        return self.last_results

    def stop(self) -> None:
        """Signal the runtime to stop; an active audit is cancelled."""
        self._running = False
        self._stopped.set()
        if self._active is not None:
            self._active.cancel()

    async def _sleep(self, seconds: float) -> None:
        """Wait between cycles; returns early once stop() is called."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _cycle(self) -> list[RunResult]:
        """Run each audit once, in order. Audits never share a ledger."""
        results: list[RunResult] = []
        for sync in self.syncs:
            if not self._running:
                break
            self._active = sync
            try:
                result = await sync.run()
            finally:
                self._active = None
            results.append(result)

            bt.logging.info({
                "auditor_result": {
                    "scope": result.scope,
                    "status": result.status.value,
                    "rounds": result.rounds,
                    "records": result.stats.records,
                    "total": result.stats.total,
                    "rejections": result.rejections,
                }
            })
        return results


__all__ = ["AuditorRuntime"]
