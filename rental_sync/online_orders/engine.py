"""Online order sync engine: one guarded scrape run at a time.

The engine owns the browser session, the run-lock and the status tracker.
``start`` returns immediately with the tracker snapshot and runs the scrape in
a background task; ``run`` does the same work inline (CLI and tests).
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from rental_sync.common.app_config_store import ONLINE_ORDERS_CONFIG_KEY, AppConfigStore
from rental_sync.common.json_logger import DailyFileSink, JsonLogger, get_logger, log_event, read_daily_log
from rental_sync.config import Config, ConfigError
from rental_sync.crypto import ENCRYPTED_PREFIX, encrypt_secret
from rental_sync.online_orders.browser import (
    BLANK_URLS,
    LOGIN_CONFIRM_TIMEOUT_SECONDS,
    BrowserSession,
    is_browser_closed_error,
    login_selectors,
    perform_login,
    probe_session,
    wait_until_logged_in,
)
from rental_sync.online_orders.logistics import (
    MAX_DETAIL_LOOKUPS_PER_PAGE,
    LogisticsLeg,
    extract_from_detail_page,
    extract_from_modal,
    modal_needs_fallback,
    needs_logistics,
    prefers_modal,
    skips_detail,
)
from rental_sync.online_orders.notifications import render_attention_message, send_webhooks
from rental_sync.online_orders.order_list import (
    RawRow,
    collect_rows,
    open_order_list,
    reset_to_first_page,
    resolve_order_frame,
    traverse_pages,
    wait_for_list,
    wait_random,
)
from rental_sync.online_orders.parsing import ParsedOrder, RowInput, parse_row
from rental_sync.online_orders.persistence import OrderRepository, SaveResult, save_orders, save_snapshot
from rental_sync.online_orders.risk import ensure_no_risk
from rental_sync.online_orders.run_status import RunResult, RunState, RunStatusTracker
from rental_sync.online_orders.site_config import OnlineOrdersConfig, SiteConfig
from rental_sync.online_orders.status_mapper import map_status

ONLINE_LOG_PREFIX = "online-sync"
SAVE_BATCH_SIZE = 200
FIRST_PAGE_ROW_LIMIT = 20

WebhookSender = Callable[..., Awaitable[Any]]


class RiskTimeout(RuntimeError):
    """A challenge or login verification was not cleared within the wait window."""


class OnlineOrderSyncEngine:
    def __init__(
        self,
        *,
        config: Config,
        store: AppConfigStore,
        repository: OrderRepository,
        session: BrowserSession,
        tracker: Optional[RunStatusTracker] = None,
        logger: Optional[JsonLogger] = None,
        webhook_sender: WebhookSender = send_webhooks,
        batch_size: int = SAVE_BATCH_SIZE,
    ) -> None:
        self.config = config
        self.store = store
        self.repository = repository
        self.session = session
        self.tracker = tracker or RunStatusTracker()
        sinks = [self.tracker.log_sink, DailyFileSink(config.logs_dir, ONLINE_LOG_PREFIX)]
        if logger is None:
            self.logger = get_logger(sinks=sinks)
        else:
            self.logger = JsonLogger(run_id=logger.run_id, stream=logger.stream, sinks=[*logger.sinks, *sinks])
        self.webhook_sender = webhook_sender
        self.batch_size = batch_size
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None
        self._site: Optional[SiteConfig] = None
        self._webhook_urls: List[str] = []

    # ── Configuration ──────────────────────────────────────────────────────

    async def read_raw_config(self) -> Dict[str, Any]:
        stored = await self.store.get(ONLINE_ORDERS_CONFIG_KEY)
        return dict(stored) if isinstance(stored, Mapping) else {}

    async def load_sync_config(self) -> OnlineOrdersConfig:
        return OnlineOrdersConfig.from_mapping(await self.read_raw_config(), secret_key=self.config.secret_key)

    async def save_config(self, updates: Mapping[str, Any]) -> Dict[str, Any]:
        """Shallow-merge ``updates``; plaintext site passwords are encrypted before storage."""

        payload = dict(updates)
        if isinstance(payload.get("sites"), list):
            sites = []
            for item in payload["sites"]:
                site = dict(item) if isinstance(item, Mapping) else item
                if isinstance(site, dict):
                    password = site.get("password")
                    if isinstance(password, str) and password and not password.startswith(ENCRYPTED_PREFIX):
                        site["password"] = encrypt_secret(self.config.secret_key, password)
                sites.append(site)
            payload["sites"] = sites
        merged = await self.store.merge(ONLINE_ORDERS_CONFIG_KEY, payload)
        OnlineOrdersConfig.from_mapping(merged, secret_key=self.config.secret_key)
        log_event(logger=self.logger, phase="config", message="线上订单同步配置已更新", keys=sorted(payload))
        return merged

    # ── Status ─────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def status(self) -> Dict[str, Any]:
        self.tracker.heartbeat_active = self.session.heartbeat_active
        return self.tracker.snapshot()

    def read_logs(self, site_id: str, day: Optional[date] = None) -> List[Dict[str, Any]]:
        return read_daily_log(self.config.logs_dir, ONLINE_LOG_PREFIX, site_id, day)

    def _set_status(self, state: RunState, message: str, *, needs_attention: bool = False, level: str = "ok") -> None:
        if self.tracker.transition(state, message, needs_attention=needs_attention):
            log_event(
                logger=self.logger,
                phase="status",
                status=level,
                message=message,
                site_id=self.tracker.site_id,
                state=state.value,
            )

    def _log(self, message: str, *, status: str = "ok", **fields: Any) -> None:
        log_event(
            logger=self.logger,
            phase="sync",
            status=status,
            message=message,
            site_id=self.tracker.site_id,
            **fields,
        )

    # ── Attention handling (used by the risk waiter) ───────────────────────

    async def request_attention(self, reason: str) -> None:
        self._set_status(RunState.AWAITING_USER, f"{reason}，等待人工处理", needs_attention=True, level="warn")
        site = self._site
        content = render_attention_message(
            reason=reason,
            remote_url=self.config.remote_auth_url,
            site_name=site.name if site else None,
        )
        await self.webhook_sender(self._webhook_urls, content, logger=self.logger, site_id=self.tracker.site_id)

    async def cooling_down(self, message: str) -> None:
        self._set_status(RunState.RUNNING, message, level="warn")

    async def resume(self, message: str) -> None:
        self._set_status(RunState.RUNNING, message)

    # ── Run entrypoints ────────────────────────────────────────────────────

    async def start(self, site_id: str) -> Dict[str, Any]:
        """Kick off a run in the background unless one is already active."""

        if self._lock.locked():
            self._log("已有同步任务在运行，忽略本次触发", status="warn")
            return self.status()
        await self._lock.acquire()
        self._begin(site_id)
        self._task = asyncio.create_task(self._run_locked(site_id))
        return self.status()

    async def run(self, site_id: str) -> Dict[str, Any]:
        if self._lock.locked():
            self._log("已有同步任务在运行，忽略本次触发", status="warn")
            return self.status()
        await self._lock.acquire()
        self._begin(site_id)
        await self._run_locked(site_id)
        return self.status()

    async def wait_for_current_run(self) -> None:
        if self._task is not None:
            await self._task

    def _begin(self, site_id: str) -> None:
        self.tracker.begin(site_id, "开始同步")
        self._log("开始同步", state=RunState.RUNNING.value)

    def _fail(self, message: str) -> None:
        self.tracker.fail(message)
        self._log(message, status="error", state=RunState.ERROR.value)

    async def _run_locked(self, site_id: str) -> None:
        try:
            await self._execute(site_id)
        except (ConfigError, RiskTimeout) as exc:
            self._fail(str(exc))
        except Exception as exc:
            if is_browser_closed_error(exc):
                await self.session.reset()
            self._fail(f"同步失败: {exc}")
        finally:
            self._site = None
            self._lock.release()

    # ── Run body ───────────────────────────────────────────────────────────

    async def _guard(self, page: Any, site: SiteConfig, failure: str, *, include_login: bool = True) -> None:
        cleared = await ensure_no_risk(
            page,
            handler=self,
            logger=self.logger,
            site_id=site.id,
            login_url=site.login_url if include_login else "",
            login_selectors=login_selectors(site) if include_login else (),
        )
        if not cleared:
            raise RiskTimeout(failure)

    async def _authenticate(self, page: Any, site: SiteConfig) -> None:
        if (page.url or "") in BLANK_URLS:
            await page.goto(site.login_url, wait_until="domcontentloaded")
        probe = await probe_session(page, site, logger=self.logger)
        if probe.valid:
            await page.reload(wait_until="domcontentloaded")
            return
        self._set_status(RunState.RUNNING, "正在登录")
        await perform_login(page, site, logger=self.logger)
        if await wait_until_logged_in(page, site, timeout=LOGIN_CONFIRM_TIMEOUT_SECONDS):
            self._log("登录成功")
            return
        self._log("登录验证等待人工介入", status="warn")
        await self._guard(page, site, "登录验证超时")

    async def _execute(self, site_id: str) -> None:
        sync_config = await self.load_sync_config()
        site = sync_config.site(site_id)
        site.validate_for_run()
        self._site = site
        self._webhook_urls = list(sync_config.webhook_urls)

        await self.session.stop_heartbeat()
        page = await self.session.ensure_page(sync_config.headless)
        await self._authenticate(page, site)

        await open_order_list(page, site.selectors)
        await wait_random(page, 800, 1600)
        scope = await resolve_order_frame(page, site.selectors, logger=self.logger, site_id=site.id)
        await reset_to_first_page(scope, logger=self.logger, site_id=site.id)
        await self._guard(page, site, "风控验证超时")
        await wait_for_list(scope, site.selectors, logger=self.logger, site_id=site.id)

        result = RunResult(page_url=page.url)
        try:
            result.title = await page.title()
        except Exception:
            result.title = None
        collector = _RunCollector(self, page, scope, site, sync_config, result)

        try:
            result.pages_visited = await traverse_pages(
                scope,
                site.selectors,
                max_pages=site.max_pages,
                on_page=collector.handle_page,
                logger=self.logger,
                site_id=site.id,
            )
        except RiskTimeout:
            raise
        except Exception as exc:
            self._log(f"翻页过程中出错，停止抓取: {exc}", status="error")
            result.pages_visited = collector.pages_seen
            if is_browser_closed_error(exc):
                await self.session.reset()

        await collector.flush()
        result.saved = collector.saved.as_dict()
        self._log(
            f"抓取完成: {result.pages_visited} 页, {result.extracted_count} 行, 解析 {len(collector.parsed)} 个订单",
        )
        try:
            await save_snapshot(self.store, result.as_dict())
            self.tracker.snapshot_saved = True
        except Exception as exc:
            self._log(f"保存快照失败: {exc}", status="warn")

        if self.session.page is not None:
            self.session.start_heartbeat()
        self.tracker.heartbeat_active = self.session.heartbeat_active
        self.tracker.succeed(result, "已保存快照到数据库")
        self._log("已保存快照到数据库", state=RunState.SUCCESS.value)


class _RunCollector:
    """Per-run page callback: parse, enrich, incremental stop and batched saves."""

    def __init__(
        self,
        engine: OnlineOrderSyncEngine,
        page: Any,
        scope: Any,
        site: SiteConfig,
        sync_config: OnlineOrdersConfig,
        result: RunResult,
    ) -> None:
        self.engine = engine
        self.page = page
        self.scope = scope
        self.site = site
        self.sync_config = sync_config
        self.result = result
        self.parsed: Dict[str, ParsedOrder] = {}
        self.pending: List[ParsedOrder] = []
        self.saved = SaveResult()
        self.consecutive_final = 0
        self.pages_seen = 0

    async def handle_page(self, index: int) -> bool:
        engine = self.engine
        await engine._guard(self.page, self.site, "风控验证超时")
        await wait_random(self.scope, 300, 900)
        engine._set_status(RunState.RUNNING, f"正在抓取第 {index} 页")
        summary, rows = await collect_rows(self.scope, self.site.selectors, logger=engine.logger, site_id=self.site.id)
        self.pages_seen = index
        self.result.extracted_count += summary.row_count
        if index == 1:
            self.result.pending_count = summary.pending_count
            self.result.first_page_rows = [row.text for row in rows[:FIRST_PAGE_ROW_LIMIT]]

        engine._set_status(RunState.RUNNING, "解析当前页订单与物流")
        orders = await self.parse_rows(rows)
        for order in orders:
            self.parsed[order.order_no] = order
            self.pending.append(order)
            self.result.parsed_orders.append(order.to_summary())
        if len(self.pending) >= engine.batch_size:
            engine._log(f"触发批量保存，正在写入 {len(self.pending)} 条订单")
            await self.flush()
        return not await self.reached_known_history(orders)

    async def reached_known_history(self, orders: Sequence[ParsedOrder]) -> bool:
        threshold = self.sync_config.stop_threshold
        if threshold <= 0 or not orders:
            return False
        try:
            finals = await self.engine.repository.final_order_nos(order.order_no for order in orders)
        except Exception as exc:
            self.engine._log(f"增量同步检查失败: {exc}", status="warn")
            return False
        for order in orders:
            if order.order_no not in finals:
                self.consecutive_final = 0
                continue
            self.consecutive_final += 1
            if self.consecutive_final >= threshold:
                self.engine._log(f"已连续发现 {self.consecutive_final} 个历史终态订单，触发增量同步停止阈值")
                return True
        return False

    async def parse_rows(self, rows: Sequence[RawRow]) -> List[ParsedOrder]:
        pairs = []
        for raw in rows:
            order = parse_row(RowInput.build(raw.text, raw.cells, raw.ops_text))
            if order is not None:
                pairs.append((raw, order))
        if not pairs:
            return []

        completed = await self.engine.repository.completed_order_nos(order.order_no for _, order in pairs)
        budget = MAX_DETAIL_LOOKUPS_PER_PAGE
        for raw, order in pairs:
            if order.order_no in completed:
                continue
            budget = await self.enrich(raw, order, budget)
        return [order for _, order in pairs]

    async def enrich(self, raw: RawRow, order: ParsedOrder, budget: int) -> int:
        """Fill logistics for eligible rows; returns the remaining detail-page budget."""

        vendor_status = order.vendor_status
        if not needs_logistics(vendor_status):
            return budget
        has_logistics = bool(order.tracking_number or order.logistics_company)
        if skips_detail(vendor_status, has_logistics):
            return budget

        engine = self.engine
        status_update = "missing"
        if prefers_modal(vendor_status):
            leg = await extract_from_modal(
                self.page, self.scope, raw.handle, order_no=order.order_no, logger=engine.logger, site_id=self.site.id
            )
            apply_shipping(order, leg)
            if not modal_needs_fallback(leg):
                return budget
            status_update = "always"

        if budget <= 0:
            engine._log(
                "本页详情查询次数已达上限，跳过",
                status="warn",
                order_nos=[order.order_no],
            )
            return budget
        detail = await extract_from_detail_page(
            self.page, raw.handle, order_no=order.order_no, logger=engine.logger, site_id=self.site.id
        )
        budget -= 1
        if detail is None:
            return budget
        apply_shipping(order, detail.shipping)
        apply_return(order, detail.returning)
        if detail.status and (status_update == "always" or not vendor_status):
            order.vendor_status = detail.status
            order.status = map_status(detail.status)
        return budget

    async def flush(self) -> None:
        if not self.pending:
            return
        batch, self.pending = self.pending, []
        result = await save_orders(
            repository=self.engine.repository,
            orders=batch,
            site_id=self.site.id,
            allowed_merchants=self.sync_config.allowed_merchants,
            logger=self.engine.logger,
            platform=self.site.platform,
        )
        self.saved.merge(result)


def apply_shipping(order: ParsedOrder, leg: LogisticsLeg) -> None:
    order.logistics_company = leg.company or order.logistics_company
    order.tracking_number = leg.tracking_number or order.tracking_number
    order.latest_logistics_info = leg.latest_info or order.latest_logistics_info


def apply_return(order: ParsedOrder, leg: LogisticsLeg) -> None:
    order.return_logistics_company = leg.company or order.return_logistics_company
    order.return_tracking_number = leg.tracking_number or order.return_tracking_number
    order.return_latest_logistics_info = leg.latest_info or order.return_latest_logistics_info
