"""Short series of status refreshes after a mutating command."""

from __future__ import annotations

import logging
from typing import List, Optional

from connector_control.config import BURST_REFRESH_DELAYS
from connector_control.scheduler import ScheduledTaskRegistry
from connector_control.status_poller import RuntimeStatusPoller

logger = logging.getLogger(__name__)

BURST_CONCERN = "status-burst"


class MutationBurstRefresher:
    """Refreshes immediately, then once more after each configured delay.

    Kafka Connect acknowledges pause/resume/restart before the tasks have
    transitioned, so a single refresh would usually see the old state.
    """

    def __init__(
        self,
        poller: RuntimeStatusPoller,
        scheduler: ScheduledTaskRegistry,
        delays: Optional[List[float]] = None
    ):
        self.poller = poller
        self.scheduler = scheduler
        self.delays = list(BURST_REFRESH_DELAYS if delays is None else delays)

    async def burst(self, pipeline_id: str) -> bool:
        """Run the immediate refresh and arm the delayed ones.

        Delayed refreshes left over from an earlier burst of the same
        pipeline are replaced.

        Returns:
            Whether the immediate refresh was applied
        """
        self.scheduler.stop(BURST_CONCERN, pipeline_id)
        if self.poller.view(pipeline_id) is None:
            logger.debug(f"No status view open for pipeline {pipeline_id}; skipping burst refresh")
            return False

        for delay in self.delays:
            self.scheduler.schedule_once(
                BURST_CONCERN,
                pipeline_id,
                lambda: self.poller.refresh(pipeline_id),
                delay,
            )
        logger.debug(f"Burst refresh for pipeline {pipeline_id} at 0s and {self.delays}")
        return await self.poller.refresh(pipeline_id, explicit=True)

    def cancel(self, pipeline_id: str) -> None:
        self.scheduler.stop(BURST_CONCERN, pipeline_id)
