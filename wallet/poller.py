import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from .models import PurchaseStage
from .stages import advance_stage, derive_stage, is_terminal

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0


@dataclass
class PollState:
    stage: PurchaseStage = PurchaseStage.PENDING
    polls: int = 0
    failures: int = 0
    completed: bool = False
    last_payload: dict = field(default_factory=dict)


class PurchaseStatusPoller:
    """Follows one purchase request until it reaches the ``completed`` stage.

    Each tick is a read-only GET of ``/api/credit-purchase/{id}/status``. The
    observed stage only ever moves forward, ``on_complete`` fires exactly once,
    and failed ticks are retried on the next interval.
    """

    def __init__(
        self,
        client: httpx.Client,
        purchase_id: int,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_stage: Optional[Callable[[PurchaseStage, dict], None]] = None,
        on_complete: Optional[Callable[[dict], None]] = None,
    ):
        self.client = client
        self.purchase_id = purchase_id
        self.interval = interval
        self.on_stage = on_stage
        self.on_complete = on_complete
        self.state = PollState()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"/api/credit-purchase/{self.purchase_id}/status"

    @property
    def stage(self) -> PurchaseStage:
        return self.state.stage

    @property
    def is_running(self) -> bool:
        return not self._stop.is_set() and not self.state.completed

    def poll_once(self) -> PurchaseStage:
        with self._lock:
            if self.state.completed:
                return self.state.stage
            self.state.polls += 1
            try:
                response = self.client.get(self.url)
                response.raise_for_status()
                payload = response.json()
                observed = derive_stage(payload["status"], payload.get("adminUrl"))
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                self.state.failures += 1
                logger.warning("Polling purchase %s failed, retrying next tick: %s", self.purchase_id, e)
                return self.state.stage

            self.state.last_payload = payload
            new_stage = advance_stage(self.state.stage, observed)
            changed = new_stage != self.state.stage
            self.state.stage = new_stage
            if changed:
                logger.info("Purchase %s moved to stage %s", self.purchase_id, new_stage.value)
                if self.on_stage:
                    self.on_stage(new_stage, payload)
            if is_terminal(new_stage):
                self.state.completed = True
                self._stop.set()
                if self.on_complete:
                    self.on_complete(payload)
            return new_stage

    def run(self) -> PurchaseStage:
        """Poll until the purchase completes or ``cancel()`` is called."""
        while not self._stop.is_set():
            self.poll_once()
            if self._stop.wait(self.interval):
                break
        return self.state.stage

    def start(self) -> threading.Thread:
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(
                target=self.run, name=f"purchase-poller-{self.purchase_id}", daemon=True
            )
            self._thread.start()
        return self._thread

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
