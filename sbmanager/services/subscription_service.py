import asyncio
import httpx
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sbmanager.core.errors import EntityNotFoundError, SubscriptionError
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.entities import Node, Subscription, Traffic
from sbmanager.services.apply_service import ApplyCoordinator
from sbmanager.services.clash_proxy_parser import parse_clash_yaml

logger = logging.getLogger(__name__)

USER_AGENT = "clash-verge/v1.0.0"
FETCH_TIMEOUT = 30.0
REFRESH_CONCURRENCY = 5


def parse_userinfo(header: str) -> Tuple[Optional[Traffic], Optional[datetime]]:
    """
    Parses 'upload=1; download=2; total=3; expire=1700000000'.
    Returns:
        Tuple[Optional[Traffic], Optional[datetime]]: Traffic when a total is known, and the expiry.
    """
    info: Dict[str, int] = {}
    for part in header.split(';'):
        if '=' not in part:
            continue
        key, value = part.split('=', 1)
        try:
            info[key.strip().lower()] = int(float(value.strip()))
        except ValueError:
            logger.debug(f"Ignoring subscription-userinfo field '{part.strip()}'")

    traffic = None
    total = info.get("total", 0)
    if total > 0:
        used = info.get("upload", 0) + info.get("download", 0)
        traffic = Traffic(total=total, used=used, remaining=max(total - used, 0))

    expire_at = None
    if info.get("expire", 0) > 0:
        expire_at = datetime.fromtimestamp(info["expire"], tz=timezone.utc)

    return traffic, expire_at


class SubscriptionService:
    def __init__(self, store: JSONStore, client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.client = client

    async def fetch(self, url: str) -> Tuple[List[Node], Optional[Traffic], Optional[datetime]]:
        logger.info(f"Fetching subscription from {url}")

        # 1. Use a Clash compatible User-Agent so providers return YAML
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/x-yaml, text/yaml, text/plain",
        }

        try:
            if self.client is not None:
                response = await self.client.get(url, headers=headers, timeout=FETCH_TIMEOUT, follow_redirects=True)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, headers=headers, timeout=FETCH_TIMEOUT, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error fetching subscription from {url}: {e}")
            raise SubscriptionError(f"Remote server error: {e.response.status_code}", status_code=502) from e
        except httpx.RequestError as e:
            logger.error(f"Network error fetching subscription from {url}: {e}")
            raise SubscriptionError(f"Network error fetching subscription: {e}", status_code=502) from e

        # 2. Parse the Clash document
        nodes = parse_clash_yaml(response.text)
        if not nodes:
            raise SubscriptionError("No supported proxies found in subscription")

        # 3. Traffic and expiry from the subscription-userinfo header
        traffic, expire_at = None, None
        user_info_header = response.headers.get("subscription-userinfo")
        if user_info_header:
            logger.debug(f"Found subscription info header: {user_info_header}")
            traffic, expire_at = parse_userinfo(user_info_header)

        return nodes, traffic, expire_at

    def _apply_fetch(self, subscription: Subscription, nodes: List[Node],
                     traffic: Optional[Traffic], expire_at: Optional[datetime]) -> None:
        subscription.nodes = nodes
        subscription.node_count = len(nodes)
        subscription.updated_at = datetime.now(timezone.utc)
        if traffic is not None:
            subscription.traffic = traffic
        if expire_at is not None:
            subscription.expire_at = expire_at

    async def add(self, name: str, url: str) -> Subscription:
        subscription = Subscription(name=name, url=url)
        nodes, traffic, expire_at = await self.fetch(url)
        self._apply_fetch(subscription, nodes, traffic, expire_at)
        self.store.add_subscription(subscription)
        logger.info(f"Subscription '{name}' added with {len(nodes)} nodes")
        return subscription

    async def refresh(self, subscription_id: str) -> Subscription:
        subscription = self.store.get_subscription(subscription_id)
        nodes, traffic, expire_at = await self.fetch(subscription.url)

        # Re-read so edits made while fetching are kept
        current = self.store.find_subscription(subscription_id)
        if current is None:
            raise EntityNotFoundError("Subscription", subscription_id)
        self._apply_fetch(current, nodes, traffic, expire_at)
        self.store.update_subscription(current)
        logger.info(f"Subscription '{current.name}' refreshed with {len(nodes)} nodes")
        return current

    async def refresh_all(self) -> Dict[str, Optional[str]]:
        """
        Refreshes every enabled subscription, at most five at a time.
        Returns:
            Dict[str, Optional[str]]: Subscription id -> error message, None on success.
        """
        semaphore = asyncio.Semaphore(REFRESH_CONCURRENCY)

        async def refresh_one(subscription: Subscription) -> Optional[str]:
            async with semaphore:
                try:
                    await self.refresh(subscription.id)
                    return None
                except (SubscriptionError, EntityNotFoundError, OSError) as e:
                    logger.warning(f"Refreshing subscription '{subscription.name}' failed: {e}")
                    return str(e)

        subscriptions = [s for s in self.store.get_subscriptions() if s.enabled]
        results = await asyncio.gather(*(refresh_one(s) for s in subscriptions))
        return {s.id: error for s, error in zip(subscriptions, results)}


class SubscriptionScheduler:
    """Refreshes all subscriptions every `subscription_interval` minutes, then requests an apply."""

    def __init__(self, service: SubscriptionService, coordinator: ApplyCoordinator):
        self.service = service
        self.coordinator = coordinator
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        interval = self.service.store.get_settings().subscription_interval
        if interval <= 0:
            logger.info("Subscription auto-refresh is disabled")
            return
        self._task = asyncio.get_running_loop().create_task(self._run(interval * 60))
        logger.info(f"Subscription auto-refresh every {interval} minutes")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def restart(self) -> None:
        await self.stop()
        self.start()

    async def _run(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            results = await self.service.refresh_all()
            failed = [sid for sid, error in results.items() if error]
            logger.info(f"Scheduled refresh finished: {len(results) - len(failed)} ok, {len(failed)} failed")
            error = self.coordinator.request_apply()
            if error:
                logger.warning(f"Previous automatic apply failed: {error}")
