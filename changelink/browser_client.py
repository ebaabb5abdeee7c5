#!/usr/bin/env python3
"""
Browser Automation Client - typed client for the AdsPower local API.

Manages isolated browser profiles ("environments"): list/query/create/
update/delete, start/stop a browser bound to an environment, proxy checks,
groups. Every call goes through the RetryManager; GET responses are cached
with short TTLs and request bookkeeping is kept in a connection pool.

Usage:
    client = BrowserAutomationClient(base_url, retry_manager=manager)
    await client.start()
    session = await client.smart_start_browser("k1abc")
    ...
    await client.smart_stop_browser("k1abc", force_kill=True)
    await client.stop()
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from .clock import Clock, get_clock
from .errors import AutomationApiError, ChangeLinkError, ErrorType
from .models import ValidationResult
from .retry_manager import BatchOperation, RetryManager, get_retry_manager

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

STATUS_ACTIVE = "Active"
STATUS_INACTIVE = "Inactive"

# Cache TTLs (seconds)
DEFAULT_CACHE_TTL = 30.0
LIST_CACHE_TTL = 15.0
GROUP_CACHE_TTL = 60.0
METADATA_CACHE_TTL = 300.0

SLOW_REQUEST_SECONDS = 5.0

_MISSING = object()


# ============== Data types ==============

@dataclass
class Environment:
    """An isolated browser profile."""
    user_id: str
    name: str = ""
    serial_number: str = ""
    group_id: str = ""
    group_name: str = ""
    user_status: str = STATUS_INACTIVE
    ip: str = ""
    ip_country: str = ""
    remark: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.user_status == STATUS_ACTIVE

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Environment":
        return cls(
            user_id=str(data.get("user_id", "")),
            name=data.get("name") or "",
            serial_number=str(data.get("serial_number") or ""),
            group_id=str(data.get("group_id") or ""),
            group_name=data.get("group_name") or "",
            user_status=data.get("user_status") or STATUS_INACTIVE,
            ip=data.get("ip") or "",
            ip_country=data.get("ip_country") or "",
            remark=data.get("remark") or "",
            raw=dict(data),
        )


@dataclass
class BrowserSession:
    """A running browser bound to an environment."""
    user_id: str
    ws_endpoint: str = ""
    selenium_address: str = ""
    debug_port: Optional[int] = None
    webdriver: str = ""
    started_at: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, user_id: str, data: Dict[str, Any], started_at: float = 0.0) -> "BrowserSession":
        ws = data.get("ws") or {}
        port = data.get("debug_port")
        return cls(
            user_id=user_id,
            ws_endpoint=ws.get("puppeteer", ""),
            selenium_address=ws.get("selenium", ""),
            debug_port=int(port) if port not in (None, "") else None,
            webdriver=data.get("webdriver", ""),
            started_at=started_at,
            raw=dict(data),
        )


@dataclass
class RecoveryResult:
    user_id: str
    success: bool
    actions: List[str] = field(default_factory=list)
    session: Optional[BrowserSession] = None
    error: Optional[str] = None


@dataclass
class BatchPartition:
    """Explicit successful/failed split of a batch over environments."""
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, Any]:
        total = len(self.successful) + len(self.failed)
        return {
            "total": total,
            "successful": len(self.successful),
            "failed": len(self.failed),
            "success_rate": len(self.successful) / total if total else 0.0,
        }


# ============== Owned components ==============

@dataclass
class CacheEntry:
    data: Any
    expires_at: float
    endpoint: str
    params: Dict[str, str]


class ResponseCache:
    """TTL cache of successful GET responses."""

    def __init__(self, clock: Clock, default_ttl: float = DEFAULT_CACHE_TTL):
        self.clock = clock
        self.default_ttl = default_ttl
        self._entries: Dict[str, CacheEntry] = {}
        self.stats = {'hits': 0, 'misses': 0, 'evictions': 0}

    @staticmethod
    def make_key(method: str, endpoint: str, params: Optional[Dict] = None, body: Any = None) -> str:
        query = urlencode(sorted((params or {}).items()))
        payload = json.dumps(body, sort_keys=True) if body is not None else ""
        return f"{method} {endpoint}?{query} {payload}"

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.stats['misses'] += 1
            return _MISSING
        if entry.expires_at <= self.clock.monotonic():
            del self._entries[key]
            self.stats['misses'] += 1
            self.stats['evictions'] += 1
            return _MISSING
        self.stats['hits'] += 1
        return entry.data

    def set(self, key: str, data: Any, endpoint: str, params: Optional[Dict] = None, ttl: Optional[float] = None):
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(
            data=data,
            expires_at=self.clock.monotonic() + ttl,
            endpoint=endpoint,
            params={k: str(v) for k, v in (params or {}).items()},
        )

    def invalidate(self, endpoint: Optional[str] = None, **params) -> int:
        """Drop entries for an endpoint and/or whose params match all of `params`."""
        def matches(entry: CacheEntry) -> bool:
            if endpoint is not None and entry.endpoint != endpoint:
                return False
            return all(entry.params.get(k) == str(v) for k, v in params.items())

        doomed = [k for k, e in self._entries.items() if matches(e)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self.clock.monotonic()
        doomed = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in doomed:
            del self._entries[key]
        self.stats['evictions'] += len(doomed)
        return len(doomed)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class PooledConnection:
    """Bookkeeping for requests against one endpoint."""
    endpoint: str
    created_at: float
    last_used: float
    in_use: int = 0
    request_count: int = 0

    def is_idle(self, now: float, idle_timeout: float) -> bool:
        return self.in_use == 0 and (now - self.last_used) > idle_timeout


class ConnectionPool:
    """
    Bounds in-flight requests to `max_connections` and tracks per-endpoint
    usage. Idle entries are evicted by cleanup().
    """

    def __init__(self, clock: Clock, max_connections: int = 10, idle_timeout: float = 300.0):
        self.clock = clock
        self.max_connections = max_connections
        self.idle_timeout = idle_timeout
        self.connections: Dict[str, PooledConnection] = {}
        self._semaphore = asyncio.Semaphore(max_connections)
        self.stats = {'acquired': 0, 'released': 0, 'evicted': 0, 'peak_in_use': 0}

    @property
    def in_use(self) -> int:
        return sum(c.in_use for c in self.connections.values())

    @asynccontextmanager
    async def connection(self, endpoint: str):
        async with self._semaphore:
            now = self.clock.monotonic()
            conn = self.connections.get(endpoint)
            if conn is None:
                conn = PooledConnection(endpoint=endpoint, created_at=now, last_used=now)
                self.connections[endpoint] = conn
            conn.in_use += 1
            conn.request_count += 1
            self.stats['acquired'] += 1
            self.stats['peak_in_use'] = max(self.stats['peak_in_use'], self.in_use)
            try:
                yield conn
            finally:
                conn.in_use -= 1
                conn.last_used = self.clock.monotonic()
                self.stats['released'] += 1

    def cleanup(self) -> int:
        now = self.clock.monotonic()
        idle = [k for k, c in self.connections.items() if c.is_idle(now, self.idle_timeout)]
        for key in idle:
            del self.connections[key]
        self.stats['evicted'] += len(idle)
        return len(idle)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'tracked_endpoints': len(self.connections),
            'in_use': self.in_use,
            'max_connections': self.max_connections,
        }


# ============== Client ==============

class BrowserAutomationClient:
    """
    Typed client over the AdsPower local API.

    Responses follow {code, msg, data}; code 0 is success and anything else
    is an application-level error carrying msg.
    """

    def __init__(
        self,
        base_url: str = "http://local.adspower.net:50325",
        api_key: Optional[str] = None,
        retry_manager: Optional[RetryManager] = None,
        clock: Optional[Clock] = None,
        timeout: float = 30.0,
        start_timeout: float = 60.0,
        max_connections: int = 10,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        cleanup_interval: float = 60.0,
        idle_timeout: float = 300.0,
        stop_wait: float = 2.0,
        force_stop_wait: float = 3.0,
        recovery_wait: float = 3.0
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.clock = clock or get_clock()
        self.retry_manager = retry_manager or get_retry_manager()
        self.timeout = timeout
        self.start_timeout = start_timeout
        self.cleanup_interval = cleanup_interval
        self.stop_wait = stop_wait
        self.force_stop_wait = force_stop_wait
        self.recovery_wait = recovery_wait

        self.cache = ResponseCache(self.clock, default_ttl=cache_ttl)
        self.pool = ConnectionPool(self.clock, max_connections=max_connections, idle_timeout=idle_timeout)

        self._session: Optional[aiohttp.ClientSession] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

        self.metrics = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'slow_requests': 0,
            'total_response_time': 0.0,
        }

    # ===== Lifecycle =====

    async def start(self):
        """Open the HTTP session and start the periodic cleanup task."""
        if self._running:
            return
        self._running = True
        await self._get_session()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"[AdsPower] Client started ({self.base_url})")

    async def stop(self):
        """Cancel the cleanup task, close the HTTP session and drop cached state."""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self.cache.clear()
        logger.info("[AdsPower] Client stopped")

    async def __aenter__(self) -> "BrowserAutomationClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _cleanup_loop(self):
        while self._running:
            await self.clock.sleep(self.cleanup_interval)
            self.run_cleanup()

    def run_cleanup(self) -> Dict[str, int]:
        """Purge expired cache entries and idle pool bookkeeping."""
        expired = self.cache.purge_expired()
        idle = self.pool.cleanup()
        if expired or idle:
            logger.debug(f"[AdsPower] Cleanup: {expired} cache entries, {idle} idle connections")
        return {"expired_cache_entries": expired, "idle_connections": idle}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            connector = aiohttp.TCPConnector(limit=self.pool.max_connections)
            self._session = aiohttp.ClientSession(headers=headers, connector=connector)
        return self._session

    # ===== Transport =====

    @staticmethod
    def classify_request_error(endpoint: str, method: str) -> ErrorType:
        """Error class of transport failures for an endpoint."""
        if endpoint.endswith("/browser/start") or endpoint.endswith("/browser/stop"):
            return ErrorType.BROWSER_ERROR
        if endpoint.endswith("/user/list") and method == "GET":
            return ErrorType.CONNECTION_ERROR
        return ErrorType.NETWORK_ERROR

    @staticmethod
    def _operation_name(method: str, endpoint: str) -> str:
        path = endpoint[len(API_PREFIX):] if endpoint.startswith(API_PREFIX) else endpoint
        return f"adspower_{method.lower()}_{path.strip('/').replace('/', '_')}"

    async def _send(
        self,
        method: str,
        url: str,
        params: Dict[str, str],
        body: Optional[Dict[str, Any]],
        timeout: float
    ) -> Tuple[int, Any]:
        """Single HTTP exchange. Returns (status, decoded payload)."""
        session = await self._get_session()
        async with session.request(
            method,
            url,
            params=params or None,
            json=body,
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as resp:
            try:
                payload = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                payload = {"code": -1, "msg": (await resp.text())[:200]}
            return resp.status, {} if payload is None else payload

    @staticmethod
    def _raise_for_status(status: int, endpoint: str, payload: Dict[str, Any]):
        if status < 400:
            return
        detail = payload.get("msg") or ""
        if status >= 500:
            raise AutomationApiError(f"Server Error {status}: {detail}", ErrorType.SERVER_ERROR, status=status, endpoint=endpoint)
        if status == 429:
            raise AutomationApiError(f"Rate Limit Error: {detail}", ErrorType.RATE_LIMIT_ERROR, status=status, endpoint=endpoint)
        if status in (401, 403):
            raise AutomationApiError(f"Authentication Error {status}: {detail}", ErrorType.AUTH_ERROR, status=status, endpoint=endpoint)
        raise AutomationApiError(f"Client Error {status}: {detail}", ErrorType.CLIENT_ERROR, status=status, endpoint=endpoint)

    @staticmethod
    def _application_error_type(msg: str, default: ErrorType) -> ErrorType:
        lowered = msg.lower()
        if "too many request" in lowered:
            return ErrorType.RATE_LIMIT_ERROR
        if "not exist" in lowered or "not found" in lowered or "invalid" in lowered:
            return ErrorType.CLIENT_ERROR
        return default

    async def _perform(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, str],
        body: Optional[Dict[str, Any]],
        timeout: float,
        error_type: ErrorType
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        self.metrics['total_requests'] += 1

        async with self.pool.connection(endpoint):
            started = self.clock.monotonic()
            try:
                status, payload = await self._send(method, url, params, body, timeout)
            except asyncio.TimeoutError:
                self.metrics['failed_requests'] += 1
                raise AutomationApiError(
                    f"Request timeout after {timeout}s: {method} {endpoint}",
                    ErrorType.TIMEOUT_ERROR, endpoint=endpoint
                )
            except aiohttp.ClientError as e:
                self.metrics['failed_requests'] += 1
                raise AutomationApiError(f"Request failed: {method} {endpoint}: {e}", error_type, endpoint=endpoint)
            finally:
                elapsed = self.clock.monotonic() - started
                self.metrics['total_response_time'] += elapsed

        if elapsed > SLOW_REQUEST_SECONDS:
            self.metrics['slow_requests'] += 1
            logger.warning(f"[AdsPower] Slow response: {method} {endpoint} took {elapsed:.2f}s")

        try:
            if not isinstance(payload, dict):
                self._raise_for_status(status, endpoint, {})
                raise AutomationApiError(
                    f"AdsPower error ({endpoint}): expected a JSON object, got {type(payload).__name__}",
                    ErrorType.SERVER_ERROR, status=status, endpoint=endpoint
                )
            self._raise_for_status(status, endpoint, payload)
            code = payload.get("code", -1)
            if code != 0:
                msg = payload.get("msg") or f"code {code}"
                raise AutomationApiError(
                    f"AdsPower error ({endpoint}): {msg}",
                    self._application_error_type(msg, error_type),
                    status=status, code=code, endpoint=endpoint
                )
        except AutomationApiError:
            self.metrics['failed_requests'] += 1
            raise

        self.metrics['successful_requests'] += 1
        return payload.get("data")

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[float] = None,
        use_cache: bool = True
    ) -> Any:
        method = method.upper()
        clean_params = {k: str(v) for k, v in (params or {}).items() if v is not None}
        cacheable = method == "GET" and use_cache
        key = self.cache.make_key(method, endpoint, clean_params, body)

        if cacheable:
            cached = self.cache.get(key)
            if cached is not _MISSING:
                logger.debug(f"[AdsPower] Cache hit: {method} {endpoint}")
                return cached

        error_type = self.classify_request_error(endpoint, method)

        async def _do():
            return await self._perform(method, endpoint, clean_params, body, timeout or self.timeout, error_type)

        data = await self.retry_manager.execute_with_retry(
            _do, self._operation_name(method, endpoint), error_type
        )

        if cacheable:
            self.cache.set(key, data, endpoint, clean_params, ttl=cache_ttl)
        return data

    # ===== Environments =====

    async def list_environments(
        self,
        page: int = 1,
        page_size: int = 100,
        group_id: Optional[str] = None,
        user_id: Optional[str] = None,
        user_status: Optional[str] = None
    ) -> List[Environment]:
        data = await self._request(
            "GET", f"{API_PREFIX}/user/list",
            params={
                "page": page,
                "page_size": page_size,
                "group_id": group_id,
                "user_id": user_id,
                "user_status": user_status,
            },
            cache_ttl=LIST_CACHE_TTL
        )
        return [Environment.from_api(item) for item in (data or {}).get("list", [])]

    async def get_all_environments(self, page_size: int = 100, max_pages: int = 100) -> List[Environment]:
        """Walk every page of the environment list."""
        environments: List[Environment] = []
        for page in range(1, max_pages + 1):
            batch = await self.list_environments(page=page, page_size=page_size)
            environments.extend(batch)
            if len(batch) < page_size:
                break
        else:
            logger.warning(f"[AdsPower] Stopped paginating environments after {max_pages} pages")
        return environments

    async def get_environment(self, user_id: str) -> Optional[Environment]:
        """Query one environment; falls back to a filtered list."""
        try:
            data = await self._request(
                "GET", f"{API_PREFIX}/user/query", params={"user_id": user_id}, cache_ttl=DEFAULT_CACHE_TTL
            )
            if isinstance(data, dict) and "list" in data:
                items = data.get("list") or []
                return Environment.from_api(items[0]) if items else None
            if isinstance(data, dict) and data.get("user_id"):
                return Environment.from_api(data)
        except ChangeLinkError as e:
            logger.debug(f"[AdsPower] user/query unavailable for {user_id}, falling back to list: {e}")

        for env in await self.list_environments(user_id=user_id):
            if env.user_id == user_id:
                return env
        return None

    async def get_multiple_environments(self, user_ids: List[str]) -> Dict[str, Optional[Environment]]:
        results = await asyncio.gather(
            *[self.get_environment(uid) for uid in user_ids],
            return_exceptions=True
        )
        found = {}
        for uid, res in zip(user_ids, results):
            if isinstance(res, Exception):
                logger.warning(f"[AdsPower] Failed to fetch environment {uid}: {res}")
                found[uid] = None
            else:
                found[uid] = res
        return found

    async def create_environment(self, profile: Dict[str, Any]) -> str:
        """Create an environment and return its user_id."""
        data = await self._request("POST", f"{API_PREFIX}/user/create", body=profile)
        self._invalidate_environment_lists()
        user_id = str((data or {}).get("id") or (data or {}).get("user_id") or "")
        logger.info(f"[AdsPower] Created environment {user_id}")
        return user_id

    async def update_environment(self, user_id: str, changes: Dict[str, Any]):
        await self._request("POST", f"{API_PREFIX}/user/update", body={"user_id": user_id, **changes})
        self.clear_environment_cache(user_id)

    async def delete_environments(self, user_ids: List[str]) -> BatchPartition:
        """Batch delete; falls back to one-by-one when the batch call fails."""
        partition = BatchPartition()
        try:
            await self._request("POST", f"{API_PREFIX}/user/delete", body={"user_ids": list(user_ids)})
            partition.successful = [{"user_id": uid, "data": None} for uid in user_ids]
        except ChangeLinkError as e:
            logger.warning(f"[AdsPower] Batch delete failed ({e}), deleting one by one")
            for uid in user_ids:
                try:
                    await self._request("POST", f"{API_PREFIX}/user/delete", body={"user_ids": [uid]})
                    partition.successful.append({"user_id": uid, "data": None})
                except ChangeLinkError as single_error:
                    partition.failed.append({"user_id": uid, "error": str(single_error)})

        for uid in user_ids:
            self.clear_environment_cache(uid)
        return partition

    async def validate_environment(self, user_id: str) -> ValidationResult:
        """An environment is usable only if it exists and its status is Active."""
        try:
            environment = await self.get_environment(user_id)
        except ChangeLinkError as e:
            return ValidationResult.invalid([f"Environment validation failed: {e}"])

        if environment is None:
            return ValidationResult.invalid([f"Environment {user_id} not found"])
        if environment.user_status != STATUS_ACTIVE:
            return ValidationResult.invalid([f"Environment status abnormal: {environment.user_status}"])
        return ValidationResult.ok()

    # ===== Browser sessions =====

    async def start_browser(
        self,
        user_id: str,
        open_tabs: Optional[int] = None,
        headless: Optional[bool] = None,
        launch_args: Optional[List[str]] = None,
        ip_tab: Optional[int] = None,
        clear_cache_after_closing: Optional[bool] = None
    ) -> BrowserSession:
        params: Dict[str, Any] = {"user_id": user_id, "open_tabs": open_tabs, "ip_tab": ip_tab}
        if headless is not None:
            params["headless"] = 1 if headless else 0
        if clear_cache_after_closing is not None:
            params["clear_cache_after_closing"] = 1 if clear_cache_after_closing else 0
        if launch_args:
            params["launch_args"] = json.dumps(launch_args)

        data = await self._request(
            "GET", f"{API_PREFIX}/browser/start",
            params=params, timeout=self.start_timeout, use_cache=False
        )
        self.cache.invalidate(f"{API_PREFIX}/browser/active", user_id=user_id)
        session = BrowserSession.from_api(user_id, data or {}, started_at=self.clock.time())
        logger.info(f"[AdsPower] Browser started for {user_id}")
        return session

    async def stop_browser(self, user_id: str):
        await self._request("GET", f"{API_PREFIX}/browser/stop", params={"user_id": user_id}, use_cache=False)
        self.cache.invalidate(f"{API_PREFIX}/browser/active", user_id=user_id)
        logger.info(f"[AdsPower] Browser stopped for {user_id}")

    async def get_browser_status(self, user_id: str) -> str:
        """Active or Inactive; any error reads as Inactive."""
        try:
            data = await self._request(
                "GET", f"{API_PREFIX}/browser/active", params={"user_id": user_id}, use_cache=False
            )
        except ChangeLinkError as e:
            logger.debug(f"[AdsPower] Status check failed for {user_id}: {e}")
            return STATUS_INACTIVE
        return (data or {}).get("status") or STATUS_INACTIVE

    async def smart_start_browser(self, user_id: str, auto_recover: bool = True, **options) -> BrowserSession:
        """Start; on failure run the recovery procedure before giving up."""
        try:
            return await self.start_browser(user_id, **options)
        except ChangeLinkError as e:
            if not auto_recover:
                raise
            logger.warning(f"[AdsPower] Start failed for {user_id} ({e}), attempting recovery")

        recovery = await self.recover_browser_environment(user_id)
        if not recovery.success or recovery.session is None:
            raise AutomationApiError(
                f"Browser start failed for {user_id}; recovery failed: {recovery.error}",
                ErrorType.BROWSER_ERROR,
                endpoint=f"{API_PREFIX}/browser/start"
            )
        return recovery.session

    async def smart_stop_browser(self, user_id: str, force_kill: bool = False, raise_on_error: bool = False) -> bool:
        """
        Stop, wait, re-check status.

        If the browser is still active and force_kill is set, stop once more.
        Failures are logged and reported as False unless raise_on_error.
        """
        try:
            await self.stop_browser(user_id)
            await self.clock.sleep(self.stop_wait)

            if await self.get_browser_status(user_id) == STATUS_ACTIVE:
                if not force_kill:
                    logger.warning(f"[AdsPower] Browser {user_id} still active after stop")
                    return False
                logger.warning(f"[AdsPower] Browser {user_id} still active, forcing stop")
                await self.stop_browser(user_id)
                await self.clock.sleep(self.force_stop_wait)
            return True
        except ChangeLinkError as e:
            if raise_on_error:
                raise
            logger.warning(f"[AdsPower] Stop failed for {user_id}: {e}")
            return False

    async def recover_browser_environment(self, user_id: str) -> RecoveryResult:
        """status -> stop if active -> wait -> validate -> start -> verify."""
        actions: List[str] = []
        try:
            actions.append("check browser status")
            if await self.get_browser_status(user_id) == STATUS_ACTIVE:
                actions.append("stop browser")
                await self.stop_browser(user_id)

            actions.append("wait for cleanup")
            await self.clock.sleep(self.recovery_wait)

            actions.append("validate environment")
            validation = await self.validate_environment(user_id)
            if not validation:
                raise AutomationApiError(
                    f"Environment validation failed: {'; '.join(validation.errors)}",
                    ErrorType.CLIENT_ERROR
                )

            actions.append("restart browser")
            session = await self.start_browser(user_id)

            actions.append("verify browser status")
            if await self.get_browser_status(user_id) != STATUS_ACTIVE:
                raise AutomationApiError("Browser did not become active after restart", ErrorType.BROWSER_ERROR)

            logger.info(f"[AdsPower] Recovered environment {user_id}")
            return RecoveryResult(user_id=user_id, success=True, actions=actions, session=session)

        except ChangeLinkError as e:
            logger.error(f"[AdsPower] Recovery failed for {user_id} at '{actions[-1]}': {e}")
            return RecoveryResult(user_id=user_id, success=False, actions=actions, error=str(e))

    # ===== Batch operations =====

    async def _batch(
        self,
        user_ids: List[str],
        make_op: Callable[[str], Callable],
        name: str,
        concurrency: int,
        timeout: Optional[float]
    ) -> BatchPartition:
        operations = [
            BatchOperation(
                operation=make_op(uid),
                name=f"{name}_{uid}",
                error_type=ErrorType.BROWSER_ERROR,
                # inner client calls already retry
                strategy_overrides={"max_retries": 0},
            )
            for uid in user_ids
        ]
        results = await self.retry_manager.execute_batch(
            operations, concurrency=concurrency, timeout=timeout, fail_fast=False
        )

        partition = BatchPartition()
        for uid, item in zip(user_ids, results):
            if item.success:
                partition.successful.append({"user_id": uid, "data": item.result})
            else:
                partition.failed.append({"user_id": uid, "error": item.error})

        logger.info(
            f"[AdsPower] {name}: {len(partition.successful)} succeeded, {len(partition.failed)} failed"
        )
        return partition

    async def start_multiple_browsers(self, user_ids: List[str], concurrency: int = 3, timeout: float = 60.0) -> BatchPartition:
        return await self._batch(
            user_ids, lambda uid: (lambda: self.smart_start_browser(uid)),
            "batch_browser_start", concurrency, timeout
        )

    async def stop_multiple_browsers(self, user_ids: List[str], concurrency: int = 5, force_kill: bool = True) -> BatchPartition:
        return await self._batch(
            user_ids,
            lambda uid: (lambda: self.smart_stop_browser(uid, force_kill=force_kill, raise_on_error=True)),
            "batch_browser_stop", concurrency, None
        )

    async def recover_multiple_environments(self, user_ids: List[str], concurrency: int = 2, timeout: float = 120.0) -> BatchPartition:
        async def _recover(uid: str):
            result = await self.recover_browser_environment(uid)
            if not result.success:
                raise AutomationApiError(result.error or "recovery failed", ErrorType.BROWSER_ERROR)
            return result

        return await self._batch(
            user_ids, lambda uid: (lambda: _recover(uid)),
            "batch_browser_recover", concurrency, timeout
        )

    # ===== Groups, proxies, metadata =====

    async def list_groups(self, page: int = 1, page_size: int = 100) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET", f"{API_PREFIX}/group/list",
            params={"page": page, "page_size": page_size}, cache_ttl=GROUP_CACHE_TTL
        )
        return list((data or {}).get("list", []))

    async def create_group(self, group_name: str, remark: str = "") -> str:
        data = await self._request(
            "POST", f"{API_PREFIX}/group/create", body={"group_name": group_name, "remark": remark}
        )
        self.cache.invalidate(f"{API_PREFIX}/group/list")
        return str((data or {}).get("group_id", ""))

    async def check_proxy(self, proxy_config: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST", f"{API_PREFIX}/user/proxy_check", body=proxy_config, timeout=15.0
        )
        return data or {}

    async def list_browser_kernels(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{API_PREFIX}/browser/kernel/list", cache_ttl=METADATA_CACHE_TTL)
        return list((data or {}).get("list", [])) if isinstance(data, dict) else list(data or [])

    async def list_applications(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{API_PREFIX}/application/list", cache_ttl=METADATA_CACHE_TTL)
        return list((data or {}).get("list", [])) if isinstance(data, dict) else list(data or [])

    # ===== Cache invalidation =====

    def _invalidate_environment_lists(self):
        self.cache.invalidate(f"{API_PREFIX}/user/list")
        self.cache.invalidate(f"{API_PREFIX}/user/query")

    def clear_environment_cache(self, user_id: str):
        """Drop every cached response about one environment."""
        removed = self.cache.invalidate(user_id=user_id)
        self._invalidate_environment_lists()
        logger.debug(f"[AdsPower] Cleared {removed} cached entries for {user_id}")

    # ===== Diagnostics =====

    async def test_connection(self) -> Dict[str, Any]:
        started = self.clock.monotonic()
        try:
            data = await self._request(
                "GET", f"{API_PREFIX}/user/list", params={"page": 1, "page_size": 1}, use_cache=False
            )
            data = data or {}
            page_info = data.get("page_info") or {}
            return {
                "success": True,
                "response_time": round(self.clock.monotonic() - started, 3),
                "environments_count": page_info.get("total_count", len(data.get("list", []))),
            }
        except ChangeLinkError as e:
            return {
                "success": False,
                "response_time": round(self.clock.monotonic() - started, 3),
                "error": str(e),
            }

    async def health_check(self) -> Dict[str, Any]:
        """healthy when all four checks pass, degraded when at least half do."""
        checks = {
            "connection": False,
            "response_time": 0.0,
            "environments_accessible": False,
            "browser_operations": False,
        }

        connection = await self.test_connection()
        checks["connection"] = connection["success"]
        checks["response_time"] = connection.get("response_time", 0.0)
        if not connection["success"]:
            return {"status": "unhealthy", "checks": checks, "message": connection.get("error")}

        environments: List[Environment] = []
        try:
            environments = await self.list_environments(page_size=10)
            checks["environments_accessible"] = True
        except ChangeLinkError as e:
            logger.warning(f"[AdsPower] Health check could not list environments: {e}")

        if environments:
            # get_browser_status never raises
            await self.get_browser_status(environments[0].user_id)
            checks["browser_operations"] = True

        passed = sum(1 for v in checks.values() if v)
        if passed == len(checks):
            status = "healthy"
        elif passed >= len(checks) / 2:
            status = "degraded"
        else:
            status = "unhealthy"
        return {"status": status, "checks": checks}

    async def get_system_info(self) -> Dict[str, Any]:
        connection = await self.test_connection()
        if not connection["success"]:
            return {"connection": connection, "active_browsers": 0, "system_status": "error"}

        environments = await self.list_environments(page_size=10)
        statuses = await asyncio.gather(*[self.get_browser_status(e.user_id) for e in environments])
        return {
            "connection": connection,
            "total_environments": connection.get("environments_count"),
            "active_browsers": sum(1 for s in statuses if s == STATUS_ACTIVE),
            "system_status": "healthy",
        }

    def get_performance_metrics(self) -> Dict[str, Any]:
        total = self.metrics['total_requests']
        return {
            **self.metrics,
            'average_response_time': self.metrics['total_response_time'] / total if total else 0.0,
            'cache': {**self.cache.stats, 'size': len(self.cache)},
            'pool': self.pool.get_stats(),
        }

    def get_retry_stats(self) -> Dict[str, Any]:
        return self.retry_manager.get_operation_stats()
