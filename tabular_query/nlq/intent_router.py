"""
Intent Router - entry point for a chat turn.

Each turn is classified by an ordered list of (predicate, handler) routes;
the first predicate that matches handles the turn. Patterns overlap, so the
order is a tested constant (ROUTE_ORDER).

The router never raises. Every outcome, including empty results and fetch
failures, is an ordered (possibly empty) list of instruction messages.
A reply whose first message carries the EMIT token is returned alone.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from tabular_query.core.constants import EXPORT_ROW_CAP, HOTSET_FETCH_LIMIT, utc_now
from tabular_query.core.profile import DatasetProfile
from tabular_query.domain.models import (
    Aggregation,
    ChatContext,
    ChatMessage,
    Granularity,
    Message,
    Status,
    TimeRange,
)
from tabular_query.engine.aggregation import (
    aggregate,
    detail_selection,
    per_year_totals,
    present,
    sample_row,
    year_over_year,
)
from tabular_query.engine.diff import diff
from tabular_query.engine.export import ExportMaterializer, ExportResult, SheetCodec, infer_export_name
from tabular_query.engine.gateway import DataGateway
from tabular_query.engine.row_shape import Row
from tabular_query.engine.session import SessionState, SessionStore, session_key
from tabular_query.engine.temporal import DAY_MS, default_window, from_ms, to_ms
from tabular_query.engine.uploads import first_tabular_upload
from tabular_query.nlq import presenter
from tabular_query.nlq.intent_patterns import (
    COMPARE_PATTERNS,
    EXPORT_PATTERNS,
    EXPORT_UPLOAD_PATTERNS,
    FILE_REFERENCE_PATTERNS,
    FORMAT_REQUEST_PATTERNS,
    META_PATTERNS,
    SERVICE_PATTERNS,
    TABLE_DEFAULT_PATTERNS,
    TABLE_REQUEST_PATTERNS,
    YOY_PATTERNS,
    is_oldest_request,
    matches_any,
    mentions_brand,
    mentions_year,
)
from tabular_query.nlq.param_extractor import QueryParams, extract_params
from tabular_query.utils.log_utils import get_logger
from tabular_query.utils.text import file_timestamp, slugify, strip_extension

logger = get_logger(__name__)

ROUTE_ORDER: Tuple[str, ...] = (
    "export",
    "compare",
    "meta",
    "service",
    "brand",
    "key_lookup",
    "temporal",
    "oldest",
    "top_n",
    "fallback",
)


@dataclass
class Turn:
    """One classified chat turn."""
    text: str
    session_key: str
    state: SessionState
    params: QueryParams
    context: ChatContext
    use_table: bool = False
    notices: List[Message] = field(default_factory=list)


@dataclass(frozen=True)
class Route:
    name: str
    predicate: Callable[[Turn], bool]
    handler: Callable[[Turn], Awaitable[List[Message]]]


def latest_user_text(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            text = message.text().strip()
            if text:
                return text
    return ""


def _series(aggregation: Aggregation) -> Dict[str, object]:
    return {"columns": aggregation.columns, "rows": aggregation.rows}


class IntentRouter:
    """Classifies a turn and dispatches it to the engines."""

    def __init__(
        self,
        gateway: DataGateway,
        sessions: Optional[SessionStore] = None,
        materializer: Optional[ExportMaterializer] = None,
        profile: Optional[DatasetProfile] = None,
        sheet_codec: Optional[SheetCodec] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.sessions = sessions or SessionStore()
        self.materializer = materializer or ExportMaterializer(sheet_codec=sheet_codec)
        self.sheet_codec = sheet_codec or self.materializer.sheet_codec
        self.profile = profile or DatasetProfile()
        self.clock = clock
        self.routes: List[Route] = [
            Route("export", self._wants_export, self._handle_export),
            Route("compare", self._wants_compare, self._handle_compare),
            Route("meta", lambda t: matches_any(t.text, META_PATTERNS), self._handle_meta),
            Route("service", lambda t: matches_any(t.text, SERVICE_PATTERNS), self._handle_service),
            Route("brand", lambda t: mentions_brand(t.text, self.profile.brand_names), self._handle_brand),
            Route("key_lookup", lambda t: bool(t.params.key), self._handle_key_lookup),
            Route("temporal", lambda t: t.params.time_range is not None or t.params.granularity is not None,
                  self._handle_temporal),
            Route("oldest", lambda t: is_oldest_request(t.text), self._handle_oldest),
            Route("top_n", lambda t: t.params.top_n is not None, self._handle_top_n),
            Route("fallback", lambda t: True, self._handle_fallback),
        ]
        names = tuple(r.name for r in self.routes)
        if names != ROUTE_ORDER:
            raise ValueError(f"Route table {names} does not match ROUTE_ORDER {ROUTE_ORDER}")

    @property
    def shape(self):
        return self.gateway.shape

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def build_turn(
        self,
        text: Optional[str],
        messages: Sequence[ChatMessage] = (),
        context: Optional[ChatContext] = None,
    ) -> Turn:
        context = context or ChatContext()
        raw = (text or latest_user_text(messages) or "").strip()
        key = session_key(context.session_id, messages)
        params = extract_params(raw, self.profile.key_pattern, now=self.clock())
        state = self.sessions.get(key)

        notices: List[Message] = []
        forced_table = False
        if matches_any(raw, TABLE_REQUEST_PATTERNS):
            if matches_any(raw, TABLE_DEFAULT_PATTERNS):
                state = self.sessions.set(key, always_table=True)
                notices.append(presenter.table_notice(persistent=True))
            else:
                forced_table = True
                notices.append(presenter.table_notice(persistent=False))

        return Turn(
            text=raw,
            session_key=key,
            state=state,
            params=params,
            context=context,
            use_table=state.always_table or forced_table or params.wants_table,
            notices=notices,
        )

    def classify(self, turn: Turn) -> Route:
        for route in self.routes:
            if route.predicate(turn):
                return route
        return self.routes[-1]

    async def augment(
        self,
        text: Optional[str] = None,
        messages: Sequence[ChatMessage] = (),
        context: Optional[ChatContext] = None,
    ) -> List[Message]:
        """Instruction/data messages for one turn. Never raises."""
        try:
            turn = self.build_turn(text, messages, context)
            route = self.classify(turn)
        except Exception as e:
            logger.exception(f"[IntentRouter] Could not classify turn: {e}")
            return [presenter.apology("the request could not be understood")]

        logger.info(f"[IntentRouter] Route '{route.name}' for session {turn.session_key}")
        try:
            output = await route.handler(turn)
        except Exception as e:
            logger.exception(f"[IntentRouter] Handler '{route.name}' failed: {e}")
            return [presenter.apology()]

        if not output:
            return []
        if presenter.is_verbatim(output[0]):
            return output
        return [presenter.scope_rubric(self.profile)] + turn.notices + output

    async def build_memory(
        self,
        messages: Sequence[ChatMessage] = (),
        context: Optional[ChatContext] = None,
    ) -> Message:
        """MEMORY_JSON snapshot: terminology, recent counts and the hotset."""
        limit = self.profile.hotset_limit or HOTSET_FETCH_LIMIT
        rows = await self.gateway.fetch_recent(limit)
        now = self.clock()
        now_ms = to_ms(now)
        today_start = to_ms(datetime(now.year, now.month, now.day, tzinfo=now.tzinfo))
        stamps = [self.shape.timestamp_ms(r) for r in rows]

        def count_since(since_ms: int) -> int:
            return sum(1 for ts in stamps if ts == ts and since_ms <= ts <= now_ms)

        hotset_size = self.profile.hotset_limit or len(rows)
        payload = {
            "terminology": {
                "datasetName": self.profile.dataset_name,
                "itemSingular": self.profile.item_singular,
                "itemPlural": self.profile.item_plural,
                "synonyms": self.profile.synonyms,
            },
            "snapshot": {
                "asOf": now.isoformat(),
                "today": count_since(today_start),
                "last7Days": count_since(now_ms - 7 * DAY_MS),
                "last30Days": count_since(now_ms - 30 * DAY_MS),
                "sampled": len(rows),
            },
            "hotset": [sample_row(r, self.shape, self.profile) for r in rows[:hotset_size]],
        }
        return presenter.memory(payload)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def _wants_export(self, turn: Turn) -> bool:
        return matches_any(turn.text, EXPORT_PATTERNS) or matches_any(turn.text, FORMAT_REQUEST_PATTERNS)

    def _wants_compare(self, turn: Turn) -> bool:
        return matches_any(turn.text, COMPARE_PATTERNS) or matches_any(turn.text, YOY_PATTERNS)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _now_year(self) -> int:
        return self.clock().year

    def _dataset_slug(self) -> str:
        return slugify(self.profile.dataset_name, fallback="dataset")

    def _filter_status(self, rows: List[Row], status: Optional[Status]) -> List[Row]:
        if status is None:
            return rows
        return [r for r in rows if self.shape.status(r) == status]

    def _export_reply(self, result: ExportResult) -> List[Message]:
        if result.url:
            return [presenter.download_line(result.file.filename, result.url)]
        suggestions = presenter.export_suggestions(self.profile, self._now_year())
        return [presenter.too_large(result.file, suggestions)]

    def _series_for(self, rows: List[Row], time_range: TimeRange, granularity: Granularity) -> Aggregation:
        return aggregate(rows, time_range, granularity, self.shape)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def _handle_export(self, turn: Turn) -> List[Message]:
        params, state = turn.params, turn.state
        stamp = file_timestamp(self.clock())
        as_sheet = params.wants_sheet

        if state.last_upload is not None and matches_any(turn.text, EXPORT_UPLOAD_PATTERNS):
            upload = state.last_upload
            base = f"uploaded-{slugify(strip_extension(upload.name))}-{stamp}"
            result = await self.materializer.export_rows(
                upload.rows, base, as_sheet, header_order=upload.headers_original,
            )
            return self._export_reply(result)

        aggregation = state.last_aggregation
        if aggregation is not None and not params.explicit_all and not params.has_scope() and params.granularity is None:
            base = f"{self._dataset_slug()}-{infer_export_name(aggregation)}-{stamp}"
            result = await self.materializer.export_aggregation(aggregation, base, as_sheet)
            return self._export_reply(result)

        if params.granularity is not None:
            time_range = params.time_range or default_window(params.granularity, self.clock())
            rows = await self.gateway.fetch_full(time_range)
            aggregation = self._series_for(rows, time_range, params.granularity)
            self.sessions.set(turn.session_key, last_range=time_range, last_granularity=params.granularity,
                              last_top_n=None, last_aggregation=aggregation)
            base = f"{self._dataset_slug()}-{infer_export_name(aggregation)}-{stamp}"
            result = await self.materializer.export_aggregation(aggregation, base, as_sheet)
            return self._export_reply(result)

        rows, scope_label, scope_slug = await self._export_scope(turn)
        if not rows:
            return [presenter.nothing_to_export(scope_label)]
        if len(rows) > EXPORT_ROW_CAP:
            logger.warning(f"[IntentRouter] Export of {len(rows)} rows capped at {EXPORT_ROW_CAP}")
            rows = rows[:EXPORT_ROW_CAP]

        base = f"{self._dataset_slug()}-{scope_slug}-{stamp}"
        result = await self.materializer.export_rows(rows, base, as_sheet, preferred=self.profile.preferred_headers)
        return self._export_reply(result)

    async def _export_scope(self, turn: Turn) -> Tuple[List[Row], str, str]:
        """Rows for a scoped export, with a human label and a filename slug."""
        params, state = turn.params, turn.state
        status = params.status
        status_slug = f"-{status.value.lower()}" if status else ""

        if params.explicit_all and not params.has_scope():
            rows = self._filter_status(await self.gateway.fetch_full(), status)
            return self.shape.sort_newest_first(rows), "all data", f"all{status_slug}"

        time_range = params.time_range
        top_n = params.top_n
        if time_range is None and top_n is None:
            time_range, top_n = state.last_range, state.last_top_n

        if time_range is not None:
            self.sessions.set(turn.session_key, last_range=time_range, last_top_n=None)
            rows = self._filter_status(await self.gateway.fetch_full(time_range), status)
            return self.shape.sort_newest_first(rows), time_range.label, f"{slugify(time_range.label, 'range')}{status_slug}"

        if top_n is not None:
            self.sessions.set(turn.session_key, last_top_n=top_n, last_range=None)
            rows = await self.gateway.fetch_latest(top_n, status)
            return rows, f"the latest {top_n}", f"latest-{top_n}{status_slug}"

        rows = self._filter_status(await self.gateway.fetch_full(), status)
        return self.shape.sort_newest_first(rows), "all data", f"all{status_slug}"

    # ------------------------------------------------------------------
    # Compare
    # ------------------------------------------------------------------

    def _is_year_comparison(self, turn: Turn, has_attachment: bool) -> bool:
        if has_attachment:
            return False
        if matches_any(turn.text, YOY_PATTERNS):
            return True
        return (
            mentions_year(turn.text)
            and not matches_any(turn.text, FILE_REFERENCE_PATTERNS)
            and turn.state.last_upload is None
        )

    async def _handle_compare(self, turn: Turn) -> List[Message]:
        upload = first_tabular_upload(turn.context.attachments, self.sheet_codec)
        if self._is_year_comparison(turn, upload is not None):
            return await self._handle_year_over_year(turn)

        if upload is None:
            upload = turn.state.last_upload
        if upload is None or not upload.rows:
            return [presenter.attach_file()]

        time_range = turn.params.time_range
        baseline = await self.gateway.fetch_full(time_range)
        result = diff(baseline, upload.rows)
        aggregation = result.to_aggregation()
        self.sessions.set(turn.session_key, last_upload=upload, last_aggregation=aggregation)
        logger.info(
            f"[IntentRouter] Compared {upload.name}: new={len(result.new)} updated={len(result.updated)} "
            f"deleted={len(result.deleted)}"
        )

        scope = time_range.label if time_range else "all data"
        return [presenter.compare_report(result, upload.name, f"{self.profile.dataset_name} ({scope})")]

    async def _handle_year_over_year(self, turn: Turn) -> List[Message]:
        time_range = turn.params.time_range
        rows = await self.gateway.fetch_full(time_range)
        years = None
        if time_range is not None and time_range.since_ms is not None and time_range.until_ms is not None:
            years = list(range(from_ms(time_range.since_ms).year, from_ms(time_range.until_ms).year + 1))
        aggregation = year_over_year(rows, self.shape, years)
        self.sessions.set(turn.session_key, last_aggregation=aggregation)
        return [presenter.yoy_report(aggregation, self.profile)]

    # ------------------------------------------------------------------
    # Small talk
    # ------------------------------------------------------------------

    async def _handle_meta(self, turn: Turn) -> List[Message]:
        return [presenter.capabilities(self.profile, turn.use_table)]

    async def _handle_service(self, turn: Turn) -> List[Message]:
        return [presenter.service_disclaimer(self.profile, turn.use_table)]

    async def _handle_brand(self, turn: Turn) -> List[Message]:
        return [presenter.knowledge(self.profile)]

    # ------------------------------------------------------------------
    # Data queries
    # ------------------------------------------------------------------

    async def _handle_key_lookup(self, turn: Turn) -> List[Message]:
        key = turn.params.key
        lookup = await self.gateway.fetch_by_key(key)
        payload: Dict[str, object] = {"kind": "DEEP_FETCH", "intent": "byKey", "key": key}
        singular = self.profile.item_singular

        if not lookup.found:
            payload["error"] = "not_found"
            payload["DEEP_FETCH_READY"] = True
            return [presenter.deep_fetch(f"No {singular} with key {key} was found. Say so in one sentence.", payload)]

        aggregation = detail_selection([lookup.row], self.shape, self.profile.detail_columns, name=key)
        self.sessions.set(turn.session_key, last_aggregation=aggregation)
        payload["item"] = lookup.row
        payload["summary"] = sample_row(lookup.row, self.shape, self.profile)
        payload["DEEP_FETCH_READY"] = True
        instruction = f"Describe {singular} {key} from DEEP_FETCH_JSON. " + presenter.render_instruction("detail", turn.use_table)
        return [presenter.deep_fetch(instruction, payload)]

    async def _handle_temporal(self, turn: Turn) -> List[Message]:
        params = turn.params
        granularity, time_range = params.granularity, params.time_range

        if time_range is None and granularity == Granularity.YEAR:
            rows = await self.gateway.fetch_full()
            aggregation = per_year_totals(rows, self.shape)
            self.sessions.set(turn.session_key, last_range=None, last_granularity=granularity,
                              last_top_n=None, last_aggregation=aggregation)
            payload = present("perYear", rows, self.shape, self.profile, series=_series(aggregation))
            instruction = (
                f"You have ALL years of {self.profile.item_plural}. Use DEEP_FETCH_JSON. "
                + presenter.render_instruction("series", turn.use_table)
            )
            return [presenter.deep_fetch(instruction, payload)]

        if time_range is None:
            time_range = default_window(granularity, self.clock())

        rows = await self.gateway.fetch_full(time_range)
        extras: Dict[str, object] = {"range": time_range.to_payload()}
        if granularity is not None:
            aggregation = self._series_for(rows, time_range, granularity)
            extras["granularity"] = granularity.value
            extras["series"] = _series(aggregation)
            intent, render = "bucketed", "series"
        else:
            selected = self._filter_status(rows, params.status)
            aggregation = detail_selection(
                selected, self.shape, self.profile.detail_columns,
                name=f"selection-{slugify(time_range.label, 'range')}",
            )
            rows = selected
            intent, render = "range", "detail"
            if params.status is not None:
                extras["statusFilter"] = params.status.value

        self.sessions.set(turn.session_key, last_range=time_range, last_granularity=granularity,
                          last_top_n=None, last_aggregation=aggregation)
        payload = present(intent, rows, self.shape, self.profile, **extras)
        instruction = (
            f"You have {len(rows)} {self.profile.item_plural} for {time_range.label}. Use DEEP_FETCH_JSON. "
            + presenter.render_instruction(render, turn.use_table)
        )
        return [presenter.deep_fetch(instruction, payload)]

    async def _handle_oldest(self, turn: Turn) -> List[Message]:
        row = await self.gateway.fetch_oldest()
        singular = self.profile.item_singular
        if row is None:
            payload = {"kind": "DEEP_FETCH", "intent": "oldest", "error": "empty", "DEEP_FETCH_READY": True}
            return [presenter.deep_fetch(f"There are no {self.profile.item_plural} to report. Say so briefly.", payload)]

        aggregation = detail_selection([row], self.shape, self.profile.detail_columns, name="oldest")
        self.sessions.set(turn.session_key, last_aggregation=aggregation)
        payload = present("oldest", [row], self.shape, self.profile)
        instruction = f"Describe the oldest {singular} from DEEP_FETCH_JSON (latestSample[0])."
        return [presenter.deep_fetch(instruction, payload)]

    async def _handle_top_n(self, turn: Turn) -> List[Message]:
        n, status = turn.params.top_n, turn.params.status
        rows = await self.gateway.fetch_latest(n, status)
        name = f"latest-{n}" + (f"-{status.value.lower()}" if status else "")
        aggregation = detail_selection(rows, self.shape, self.profile.detail_columns, name=name)
        self.sessions.set(turn.session_key, last_top_n=n, last_range=None, last_granularity=None,
                          last_aggregation=aggregation)

        extras: Dict[str, object] = {"requested": n, "returned": len(rows)}
        if status is not None:
            extras["statusFilter"] = status.value
        payload = present("latestN", rows, self.shape, self.profile, **extras)
        instruction = (
            f"You have the latest {len(rows)} of {n} requested {self.profile.item_plural}. Use DEEP_FETCH_JSON. "
            + presenter.render_instruction("detail", turn.use_table)
        )
        return [presenter.deep_fetch(instruction, payload)]

    async def _handle_fallback(self, turn: Turn) -> List[Message]:
        if not self.profile.always_deep_fetch_all:
            return []
        rows = await self.gateway.fetch_full()
        payload = present("all", rows, self.shape, self.profile)
        instruction = (
            f"You have a summary of ALL {self.profile.item_plural}. Use DEEP_FETCH_JSON when the question is in scope. "
            + presenter.render_instruction("summary", turn.use_table)
        )
        return [presenter.deep_fetch(instruction, payload)]
