# scheduler/monitor.py
import asyncio
import logging
import os
from dotenv import load_dotenv
from tenacity import RetryCallState, wait_exponential
from repricer.catalog import CatalogPass
from repricer.db import ScraperStateFlag, ping
from repricer.directory import load_directory
from repricer.errors import ConfigurationFailure, PersistenceFailure, StreamFailure
from repricer.fetchers import build_registry
from repricer.models import ScraperState
from repricer.periods import check_bucket_policy
from scheduler.reporter import generate_pass_report

load_dotenv()
RECONNECT_INITIAL_DELAY = float(os.getenv("RECONNECT_INITIAL_DELAY", "1"))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", "60"))

logger = logging.getLogger("scheduler")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


class ReconnectBackoff:
    """
    Delay schedule for re-opening the trigger subscription.

    Consecutive failures wait ``initial``, ``2 * initial``, ``4 * initial``
    and so on, never more than ``maximum``. ``reset()`` starts over.
    """

    def __init__(self, initial=RECONNECT_INITIAL_DELAY, maximum=RECONNECT_MAX_DELAY):
        self.initial = initial
        self.maximum = maximum
        self._wait = wait_exponential(multiplier=initial, max=maximum)
        self._failures = 0

    def next_delay(self):
        self._failures += 1
        state = RetryCallState(None, None, (), {})
        state.attempt_number = self._failures
        return self._wait(state)

    def reset(self):
        self._failures = 0


class TriggerMonitor:
    """
    Watch the ScraperState flag and run a catalog pass when it turns Pending.

    Args:
        run_pass (callable): Coroutine function running one full pass
        flag (ScraperStateFlag, optional): Trigger flag to watch and advance
        backoff (ReconnectBackoff, optional): Reconnect delay schedule
        sleep (callable, optional): Coroutine used to wait between reconnects

    State handling:
        - Pending, no pass in flight: write Running, start the pass as a
          task, write Done once it returns
        - Pending while a pass is in flight: ignored
        - anything else: logged only

    Note:
        Subscription failures only affect the listener. A pass already
        running keeps going while the listener backs off and reconnects.
        A pass that raises leaves the flag at Running.
    """

    def __init__(self, run_pass, flag=None, backoff=None, sleep=asyncio.sleep):
        self.run_pass = run_pass
        self.flag = flag or ScraperStateFlag()
        self.backoff = backoff or ReconnectBackoff()
        self._sleep = sleep
        self._pass_task = None
        self._stopping = False

    @property
    def pass_running(self):
        return self._pass_task is not None and not self._pass_task.done()

    def stop(self):
        self._stopping = True

    async def run(self):
        """
        Listen until stopped, reconnecting with exponential backoff.

        Every value delivered by the subscription, including the current value
        sent right after a (re)connect, resets the backoff.
        """
        logger.info("Monitoring scraper state...")
        while not self._stopping:
            try:
                logger.info("Starting scraper state listener...")
                async for state in self.flag.subscribe():
                    self.backoff.reset()
                    await self.handle_state(state)
                    if self._stopping:
                        break
                else:
                    if not self._stopping:
                        logger.warning("Scraper state stream closed")
            except StreamFailure as e:
                logger.error(f"Error in scraper state listener: {e}")

            if self._stopping:
                break
            delay = self.backoff.next_delay()
            logger.info(f"Retrying scraper state listener in {delay} seconds...")
            await self._sleep(delay)

    async def handle_state(self, state):
        logger.info(f"Scraper state changed: {state}")
        if state is None:
            logger.error("Settings document does not exist.")
            return
        if state != ScraperState.PENDING:
            return
        if self.pass_running:
            logger.info("A catalog pass is already running, ignoring 'Pending'")
            return

        try:
            await self.flag.write(ScraperState.RUNNING)
        except PersistenceFailure as e:
            logger.error(f"Could not claim the pass: {e}")
            return

        logger.info("Scraper state is 'Pending'. Starting the scraper...")
        self._pass_task = asyncio.create_task(self._run_pass())

    async def _run_pass(self):
        try:
            await self.run_pass()
        except Exception:
            logger.exception("Catalog pass failed, ScraperState left at 'Running'")
            return

        try:
            await self.flag.write(ScraperState.DONE)
        except PersistenceFailure as e:
            logger.error(f"Pass finished but ScraperState could not be set: {e}")

    async def wait_for_pass(self):
        """Wait for the pass in flight, if any."""
        if self._pass_task is not None:
            await self._pass_task


async def scheduled_pass(catalog):
    """
    Run one catalog pass and report on it.

    Args:
        catalog (CatalogPass): Configured pass runner

    Returns:
        PassSummary: Summary of the pass

    Note:
        Report or alert problems are logged and do not fail the pass.
    """
    logger.info("Starting catalog pass")
    summary = await catalog.run()
    logger.info(
        f"Catalog pass finished, {summary.attempted} links attempted, "
        f"{summary.failed} failed"
    )
    try:
        await generate_pass_report(summary)
    except Exception:
        logger.exception("Failed to generate pass report")
    return summary


async def async_main():
    """
    Start the engine: check configuration, load retailers, then monitor.

    Raises:
        ConfigurationFailure: If the store is not configured or unreachable,
            or the bucket policy is unknown
    """
    check_bucket_policy()
    await ping()

    directory = await load_directory()
    registry = build_registry(directory)
    catalog = CatalogPass(registry, directory)

    monitor = TriggerMonitor(lambda: scheduled_pass(catalog))
    await monitor.run()


def main():
    try:
        asyncio.run(async_main())
    except ConfigurationFailure as e:
        logger.critical(f"Startup failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
