#!/usr/bin/env python3
"""
scheduled_merge.py

Merge-window scheduler for GitLab merge requests.

Merge requests carrying the scheduled label are checked against the merge
windows declared in the repository's schedule file (read from the merge
request's source branch). Inside a window the merge request is merged,
otherwise the next window is reported back as a comment.
"""

from __future__ import annotations

import argparse
import enum
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from merge_client.gitlab_client import (
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT_SECONDS,
    GitlabConfig,
    GitlabError,
    MergeRequest,
    MergeRequestClient,
    connect,
    is_mergeable,
)

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


LOG_FILE = "scheduled-merge.log"
DEFAULT_SCHEDULED_LABEL = "scheduled"
DEFAULT_CONFIG_FILE_PATH = ".merge-schedule.yml"
DEFAULT_TASK_SCHEDULE = "@every 15m"
MAX_ACTIVATION_CANDIDATES = 1000
NO_SCHEDULE_HORIZON = timedelta(hours=1000000)

COMMENT_MERGE_FAILED = "Failed to merge"
COMMENT_MERGE_SKIPPED = "Not merging automatically"
COMMENT_MERGE_SCHEDULING_FAILED = "Failed to schedule merge"
COMMENT_MERGE_SCHEDULED = "Merge scheduled"

CRON_DESCRIPTORS = {"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"}
ISO_WEEK_NUMBER_RE = re.compile(r"^[+-]?\d+$")
DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
DURATION_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
EVERY_PREFIX = "@every "


class ScheduledMergeError(Exception):
    """Base error for the merge scheduler."""


class ConfigError(ScheduledMergeError):
    """Invalid command line or service configuration."""


class ConfigFetchError(ScheduledMergeError):
    """Schedule file could not be read from the source branch."""


class ConfigParseError(ScheduledMergeError):
    """Schedule file is not a valid schedule document."""


class WindowEvaluationError(ScheduledMergeError):
    """A merge window could not be evaluated."""


class InvalidTimezone(WindowEvaluationError):
    pass


class InvalidCronExpression(WindowEvaluationError):
    pass


class UnrecognizedIsoWeekFilter(WindowEvaluationError):
    pass


class NoMatchingActivationFound(WindowEvaluationError):
    pass


class RefreshError(ScheduledMergeError):
    pass


class MergeExecutionError(ScheduledMergeError):
    pass


class CommentPostError(ScheduledMergeError):
    """Feedback could not be posted; the user was not informed."""


class AggregateError(ScheduledMergeError):
    """All errors collected during one batch."""

    def __init__(self, errors: Sequence[Exception]):
        super().__init__("; ".join(str(error) for error in errors))
        self.errors = list(errors)


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("scheduled_merge")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


@dataclass(frozen=True)
class WindowDefinition:
    cron: str
    max_delay: timedelta
    timezone_name: Optional[str] = None
    iso_week: str = ""


@dataclass(frozen=True)
class ScheduleDocument:
    windows: Tuple[WindowDefinition, ...] = ()


@dataclass(frozen=True)
class ActivationResult:
    start: datetime
    iso_week: int


@dataclass(frozen=True)
class MergeNow:
    window: WindowDefinition
    start: datetime


@dataclass(frozen=True)
class ReportWindow:
    start: datetime
    end: datetime
    window: Optional[WindowDefinition]

    @property
    def unscheduled(self) -> bool:
        return self.window is None


@dataclass(frozen=True)
class EvaluationFailed:
    reason: str
    error: Optional[WindowEvaluationError] = None


Decision = Union[MergeNow, ReportWindow, EvaluationFailed]


class RequestOutcome(enum.Enum):
    MERGED = "merged"
    SKIPPED_NOT_MERGEABLE = "skipped-not-mergeable"
    MERGE_FAILED = "merge-failed"
    SCHEDULED_COMMENT_POSTED = "scheduled-comment-posted"
    SCHEDULE_ERROR_COMMENT_POSTED = "schedule-error-comment-posted"


@dataclass(frozen=True)
class TaskConfig:
    scheduled_label: str = DEFAULT_SCHEDULED_LABEL
    config_file_path: str = DEFAULT_CONFIG_FILE_PATH


@dataclass
class BatchRunResult:
    started_at: datetime
    ended_at: Optional[datetime] = None
    outcomes: Dict[str, RequestOutcome] = field(default_factory=dict)
    errors: List[ScheduledMergeError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def error(self) -> Optional[AggregateError]:
        if not self.errors:
            return None
        return AggregateError(self.errors)


class Clock(ABC):
    """Source of the current time for evaluations."""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(tz=UTC)


def require_yaml_dependency() -> None:
    if yaml is None:
        raise ScheduledMergeError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def require_croniter_dependency() -> None:
    if croniter is None:
        raise ScheduledMergeError("Missing required dependency: croniter. Install with: pip install croniter")


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ZoneInfo("UTC"), "UTC"


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    if not name:
        return system_timezone()[0]
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezone(f'Failed to load location "{name}" for merge window.') from exc


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def shift(value: datetime, delta: timedelta) -> datetime:
    """Add ``delta`` as elapsed time, keeping the result in ``value``'s zone."""
    return (_ensure_aware_utc(value) + delta).astimezone(value.tzinfo or UTC)


def format_unix_date(value: datetime) -> str:
    return f"{value:%a %b} {value.day:>2} {value:%H:%M:%S} {value.tzname() or 'UTC'} {value.year}"


# -- schedule document ------------------------------------------------------


def parse_duration(value: Any, field_path: str) -> timedelta:
    """Parse a Go style duration such as ``1h30m``, ``90m`` or ``1.5h``."""
    if isinstance(value, bool):
        raise ConfigParseError(f'Error: {field_path} must be a duration like "1h30m".')
    if isinstance(value, int) and value == 0:
        return timedelta(0)
    if not isinstance(value, str):
        raise ConfigParseError(f'Error: {field_path} must be a duration like "1h30m", got {value!r}.')

    text = value.strip()
    if text.startswith("-"):
        raise ConfigParseError(f'Error: {field_path} must not be negative, got "{value}".')
    if text.startswith("+"):
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigParseError(f"Error: {field_path} must not be empty.")

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = DURATION_PART_RE.match(text, pos)
        if not match:
            raise ConfigParseError(f'Error: Invalid duration "{value}" at {field_path}.')
        seconds += float(match.group(1)) * DURATION_UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=seconds)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigParseError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _optional_scalar(value: Any, field_path: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ConfigParseError(f"Error: {field_path} must be a string.")
    if isinstance(value, int):
        return str(value)
    if not isinstance(value, str):
        raise ConfigParseError(f"Error: {field_path} must be a string.")
    return value.strip()


def parse_window(raw: Any, field_path: str) -> WindowDefinition:
    if not isinstance(raw, dict):
        raise ConfigParseError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - {"schedule", "maxDelay"}
    if unknown:
        raise ConfigParseError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")

    schedule_raw = raw.get("schedule")
    if not isinstance(schedule_raw, dict):
        raise ConfigParseError(f"Error: {field_path}.schedule must be a mapping.")
    schedule_unknown = set(schedule_raw.keys()) - {"cron", "isoWeek", "location"}
    if schedule_unknown:
        raise ConfigParseError(
            f"Error: Unknown keys in {field_path}.schedule: {sorted(schedule_unknown)}."
        )

    cron = ensure_str(schedule_raw.get("cron"), f"{field_path}.schedule.cron")
    iso_week = _optional_scalar(schedule_raw.get("isoWeek"), f"{field_path}.schedule.isoWeek")
    location = _optional_scalar(schedule_raw.get("location"), f"{field_path}.schedule.location")

    if "maxDelay" not in raw:
        raise ConfigParseError(f"Error: {field_path}.maxDelay is required.")
    max_delay = parse_duration(raw["maxDelay"], f"{field_path}.maxDelay")

    return WindowDefinition(
        cron=cron,
        max_delay=max_delay,
        timezone_name=location or None,
        iso_week=iso_week,
    )


def parse_schedule_document(payload: Union[bytes, str]) -> ScheduleDocument:
    require_yaml_dependency()
    try:
        raw = yaml.safe_load(payload)
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"Error: Failed to parse YAML: {exc}") from exc

    if raw is None:
        return ScheduleDocument()
    if not isinstance(raw, dict):
        raise ConfigParseError("Error: Top-level config must be a mapping.")

    windows_raw = raw.get("mergeWindows")
    if windows_raw is None:
        return ScheduleDocument()
    if not isinstance(windows_raw, list):
        raise ConfigParseError("Error: mergeWindows must be a list.")

    windows = [parse_window(item, f"mergeWindows[{idx}]") for idx, item in enumerate(windows_raw)]
    return ScheduleDocument(windows=tuple(windows))


# -- window evaluation ------------------------------------------------------


def validate_cron(expression: str) -> str:
    require_croniter_dependency()
    expr = expression.strip()
    if expr.lower() not in CRON_DESCRIPTORS and len(expr.split()) != 5:
        raise InvalidCronExpression(
            f'Failed to parse cron schedule "{expression}": expected 5 fields.'
        )
    return expr


def iso_week_matcher(value: str) -> Callable[[int], bool]:
    """Build the ISO week guard.

    ``""`` matches every week, ``"@even"`` and ``"@odd"`` match even and odd
    week numbers, and a number matches exactly that week.
    """
    if value == "":
        return lambda week: True
    if value == "@even":
        return lambda week: week % 2 == 0
    if value == "@odd":
        return lambda week: week % 2 == 1
    if ISO_WEEK_NUMBER_RE.match(value):
        target = int(value)
        return lambda week: week == target
    raise UnrecognizedIsoWeekFilter(f'Unknown iso week: "{value}".')


def _next_cron_local(iterator: Any, zone: ZoneInfo) -> datetime:
    try:
        nxt = iterator.get_next(datetime)
    except ValueError as exc:
        # Expressions like "0 0 30 2 *" parse but never fire.
        raise NoMatchingActivationFound(f"Could not find next run: {exc}") from exc
    if nxt.tzinfo is None:
        return nxt.replace(tzinfo=zone)
    return nxt.astimezone(zone)


def next_activation(window: WindowDefinition, now: datetime) -> ActivationResult:
    """Start of the next activation of ``window``.

    The search starts ``max_delay`` before ``now``, so a window that started
    recently and is still open is returned with a start in the past.
    """
    zone = resolve_timezone(window.timezone_name)
    now_local = _ensure_aware_utc(now).astimezone(zone)
    lookback = shift(now_local, -window.max_delay)

    expression = validate_cron(window.cron)
    try:
        iterator = croniter(expression, lookback)
    except (ValueError, KeyError) as exc:
        raise InvalidCronExpression(f'Failed to parse cron schedule "{window.cron}": {exc}') from exc

    matches_week = iso_week_matcher(window.iso_week)

    candidate = _next_cron_local(iterator, zone)
    for _ in range(MAX_ACTIVATION_CANDIDATES):
        iso_week = candidate.isocalendar()[1]
        if matches_week(iso_week):
            return ActivationResult(start=candidate, iso_week=iso_week)
        candidate = _next_cron_local(iterator, zone)
    raise NoMatchingActivationFound(
        f"Could not find next run, max time: {candidate.isoformat()}"
    )


def is_active(activation: ActivationResult, now: datetime) -> bool:
    return activation.start <= _ensure_aware_utc(now)


def window_deadline(activation: ActivationResult, window: WindowDefinition) -> datetime:
    return shift(activation.start, window.max_delay)


def resolve(windows: Sequence[WindowDefinition], now: datetime) -> Decision:
    """Decide between merging now and reporting the next window.

    The first active window in document order wins. When none is active the
    earliest upcoming start across all windows is reported.
    """
    now_utc = _ensure_aware_utc(now)
    earliest: Optional[Tuple[ActivationResult, WindowDefinition]] = None
    for window in windows:
        try:
            activation = next_activation(window, now_utc)
        except WindowEvaluationError as exc:
            return EvaluationFailed(reason=str(exc), error=exc)
        if is_active(activation, now_utc):
            return MergeNow(window=window, start=activation.start)
        if earliest is None or activation.start < earliest[0].start:
            earliest = (activation, window)

    if earliest is None:
        start = now_utc + NO_SCHEDULE_HORIZON
        return ReportWindow(start=start, end=start, window=None)

    activation, window = earliest
    return ReportWindow(start=activation.start, end=window_deadline(activation, window), window=window)


def describe_decision(decision: Decision) -> str:
    if isinstance(decision, MergeNow):
        return f"Merge now (window {decision.window.cron} opened {decision.start.isoformat()})"
    if isinstance(decision, EvaluationFailed):
        return f"Evaluation failed: {decision.reason}"
    if decision.unscheduled:
        return "No merge window configured"
    return (
        f"Next merge window: {format_unix_date(decision.start)} - {format_unix_date(decision.end)}"
    )


# -- merge task -------------------------------------------------------------


SchedulingFailure = Union[ConfigFetchError, ConfigParseError, WindowEvaluationError]


def scheduling_failure_headline(error: SchedulingFailure) -> str:
    if isinstance(error, ConfigFetchError):
        return "Missing config file."
    if isinstance(error, ConfigParseError):
        return "Error while parsing config file."
    return "Error while parsing merge windows."


class MergeTask:
    """Processes every merge request carrying the scheduled label."""

    def __init__(
        self,
        client: MergeRequestClient,
        config: TaskConfig,
        clock: Optional[Clock] = None,
    ):
        self.client = client
        self.config = config
        self.clock = clock or SystemClock()

    def run(self, now: Optional[datetime] = None) -> BatchRunResult:
        started = self.clock.now()
        at = now or started
        logger.info("Running task...")
        try:
            mrs = self.client.list_merge_requests_with_label(self.config.scheduled_label)
        except GitlabError as exc:
            raise ScheduledMergeError(f"Failed to list MRs: {exc}") from exc

        logger.info("Processing %s MR(s) with label %s...", len(mrs), self.config.scheduled_label)
        result = BatchRunResult(started_at=started)
        for mr in mrs:
            try:
                outcome = self.process(mr, at)
            except ScheduledMergeError as exc:
                logger.error("[%s] %s", mr.reference, str(exc))
                result.errors.append(exc)
                continue
            result.outcomes[mr.reference] = outcome
            logger.info("[%s] Outcome: %s", mr.reference, outcome.value)

        result.ended_at = self.clock.now()
        logger.info(
            "Task finished: %s processed, %s error(s)",
            len(mrs),
            len(result.errors),
        )
        return result

    def process(self, mr: MergeRequest, now: datetime) -> RequestOutcome:
        path = self.config.config_file_path
        try:
            payload = self.client.get_file_from_branch(mr, path)
        except GitlabError as exc:
            return self._report_scheduling_failure(
                mr,
                ConfigFetchError(f'Failed to fetch "{path}" from branch "{mr.source_branch}": {exc}'),
            )

        try:
            document = parse_schedule_document(payload)
        except ConfigParseError as exc:
            return self._report_scheduling_failure(mr, exc)

        decision = resolve(document.windows, now)
        if isinstance(decision, EvaluationFailed):
            return self._report_scheduling_failure(mr, decision.error or WindowEvaluationError(decision.reason))
        if isinstance(decision, MergeNow):
            logger.info("[%s] Merge window %s is active", mr.reference, decision.window.cron)
            return self._merge(mr)
        return self._report_window(mr, decision)

    def _merge(self, mr: MergeRequest) -> RequestOutcome:
        # Other merges since the listing may have introduced conflicts.
        try:
            refreshed = self.client.refresh_merge_request(mr)
        except GitlabError as exc:
            error = RefreshError(f"Failed to refresh {mr.reference}: {exc}")
            logger.warning("[%s] %s", mr.reference, str(error))
            return self._comment(
                mr,
                COMMENT_MERGE_FAILED,
                f"Error while refreshing merge request data.\n\n{error}",
                RequestOutcome.MERGE_FAILED,
            )

        if not is_mergeable(refreshed):
            logger.info(
                "[%s] Not mergeable (status=%s); skipping",
                mr.reference,
                refreshed.detailed_merge_status,
            )
            return self._comment(
                mr,
                COMMENT_MERGE_SKIPPED,
                f"MR is not mergeable. Current status: {refreshed.detailed_merge_status}",
                RequestOutcome.SKIPPED_NOT_MERGEABLE,
            )

        try:
            self.client.merge_merge_request(refreshed)
        except GitlabError as exc:
            error = MergeExecutionError(f"Failed to merge {mr.reference}: {exc}")
            logger.warning("[%s] %s", mr.reference, str(error))
            return self._comment(
                mr,
                COMMENT_MERGE_FAILED,
                f"Error while merging.\n\n{error}",
                RequestOutcome.MERGE_FAILED,
            )

        logger.info("[%s] Merged", mr.reference)
        return RequestOutcome.MERGED

    def _report_window(self, mr: MergeRequest, decision: ReportWindow) -> RequestOutcome:
        if decision.unscheduled:
            message = (
                f"No merge windows are configured in `{self.config.config_file_path}`. "
                "This MR will not be merged automatically."
            )
        else:
            message = (
                f"This MR will be merged between {format_unix_date(decision.start)} "
                f"and {format_unix_date(decision.end)}."
            )
        if not is_mergeable(mr):
            message = (
                f"{message}\n\nWarning: This merge request is currently not mergeable. "
                f"Current status: {mr.detailed_merge_status}"
            )
        logger.info("[%s] %s", mr.reference, describe_decision(decision))
        return self._comment(mr, COMMENT_MERGE_SCHEDULED, message, RequestOutcome.SCHEDULED_COMMENT_POSTED)

    def _report_scheduling_failure(self, mr: MergeRequest, error: SchedulingFailure) -> RequestOutcome:
        headline = scheduling_failure_headline(error)
        logger.warning("[%s] %s %s", mr.reference, headline, str(error))
        return self._comment(
            mr,
            COMMENT_MERGE_SCHEDULING_FAILED,
            f"{headline}\n\n{error}",
            RequestOutcome.SCHEDULE_ERROR_COMMENT_POSTED,
        )

    def _comment(self, mr: MergeRequest, title: str, body: str, outcome: RequestOutcome) -> RequestOutcome:
        try:
            self.client.comment(mr, title, body)
        except GitlabError as exc:
            raise CommentPostError(f'Failed to post "{title}" comment on {mr.reference}: {exc}') from exc
        logger.info("[%s] Posted comment: %s", mr.reference, title)
        return outcome


# -- periodic trigger -------------------------------------------------------


@dataclass(frozen=True)
class TaskTrigger:
    expression: str
    interval: Optional[timedelta]
    cron_expr: Optional[str]
    zone: ZoneInfo

    def next_after(self, after: datetime) -> datetime:
        after_utc = _ensure_aware_utc(after)
        if self.interval is not None:
            return after_utc + self.interval
        iterator = croniter(self.cron_expr, after_utc.astimezone(self.zone))
        return _next_cron_local(iterator, self.zone).astimezone(UTC)


def parse_task_schedule(expression: str) -> TaskTrigger:
    """Accept a cron expression or ``@every <duration>``."""
    text = expression.strip()
    zone, _ = system_timezone()
    if text.startswith(EVERY_PREFIX):
        try:
            interval = parse_duration(text[len(EVERY_PREFIX):], "--task-schedule")
        except ConfigParseError as exc:
            raise ConfigError(str(exc)) from exc
        if interval <= timedelta(0):
            raise ConfigError("Error: --task-schedule interval must be > 0.")
        return TaskTrigger(expression=text, interval=interval, cron_expr=None, zone=zone)

    try:
        cron_expr = validate_cron(text)
        _next_cron_local(croniter(cron_expr, datetime.now(tz=zone)), zone)
    except WindowEvaluationError as exc:
        raise ConfigError(f"Error: Invalid --task-schedule: {exc}") from exc
    except (ValueError, KeyError) as exc:
        raise ConfigError(f'Error: Invalid --task-schedule "{expression}": {exc}') from exc
    return TaskTrigger(expression=text, interval=None, cron_expr=cron_expr, zone=zone)


def run_batch(task: MergeTask) -> Optional[BatchRunResult]:
    try:
        result = task.run()
    except ScheduledMergeError as exc:
        logger.error("Error during periodic job: %s", str(exc))
        return None
    if result.error is not None:
        logger.error("Error during periodic job: %s", str(result.error))
    return result


# -- commands ---------------------------------------------------------------


def command_run(client: MergeRequestClient, config: TaskConfig, clock: Optional[Clock] = None) -> int:
    result = run_batch(MergeTask(client, config, clock))
    if result is None or not result.success:
        return 1
    return 0


def command_daemon(
    client: MergeRequestClient,
    config: TaskConfig,
    task_schedule: str,
    clock: Optional[Clock] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_runs: Optional[int] = None,
) -> int:
    trigger = parse_task_schedule(task_schedule)
    task = MergeTask(client, config, clock)
    logger.info(
        "Starting task (schedule=%s, label=%s, config_file=%s)",
        trigger.expression,
        config.scheduled_label,
        config.config_file_path,
    )
    runs = 0
    try:
        while max_runs is None or runs < max_runs:
            now = task.clock.now()
            next_fire = trigger.next_after(now)
            logger.info("Next batch at %s", next_fire.astimezone(trigger.zone).isoformat())
            delay = (next_fire - _ensure_aware_utc(now)).total_seconds()
            if delay > 0:
                sleep(delay)
            run_batch(task)
            runs += 1
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    return 0


def parse_iso_datetime(value: str, tz: ZoneInfo, field_path: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ConfigError(f'Error: {field_path} must be ISO datetime, got "{value}".') from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def command_check(schedule_path: Path, at: Optional[str] = None) -> int:
    if not schedule_path.exists():
        raise ConfigError(f"Error: Schedule file not found: {schedule_path}")
    document = parse_schedule_document(schedule_path.read_bytes())
    now = parse_iso_datetime(at, system_timezone()[0], "--at") if at else SystemClock().now()

    print(f"Schedule file: {schedule_path}")
    print(f"Evaluated at: {now.isoformat()}")
    print(f"Merge windows: {len(document.windows)}")
    for idx, window in enumerate(document.windows):
        print(
            f"- [{idx}] cron={window.cron} location={window.timezone_name or 'local'} "
            f"isoWeek={window.iso_week or '*'} maxDelay={window.max_delay}"
        )
    decision = resolve(document.windows, now)
    print(describe_decision(decision))
    return 1 if isinstance(decision, EvaluationFailed) else 0


def build_gitlab_config(args: argparse.Namespace) -> GitlabConfig:
    token = args.gitlab_token or os.environ.get("GITLAB_TOKEN", "")
    if not token.strip():
        raise ConfigError("Error: A GitLab token is required (--gitlab-token or GITLAB_TOKEN).")
    if args.timeout <= 0:
        raise ConfigError("Error: --timeout must be > 0")
    return GitlabConfig(access_token=token.strip(), base_url=args.gitlab_base_url, timeout_seconds=args.timeout)


def connect_client(gitlab_config: GitlabConfig) -> MergeRequestClient:
    try:
        return connect(gitlab_config)
    except GitlabError as exc:
        raise ScheduledMergeError(f"GitLab client error: {exc}") from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Merge labelled GitLab merge requests inside their repository's merge windows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    gitlab_parent = argparse.ArgumentParser(add_help=False)
    gitlab_parent.add_argument(
        "-t",
        "--gitlab-token",
        help="Token with which to authenticate with GitLab (default: $GITLAB_TOKEN)",
    )
    gitlab_parent.add_argument(
        "--gitlab-base-url",
        default=DEFAULT_BASE_URL,
        help=f"Base URL of GitLab API to use (default: {DEFAULT_BASE_URL})",
    )
    gitlab_parent.add_argument(
        "--scheduled-label",
        default=DEFAULT_SCHEDULED_LABEL,
        help="Name of the label which indicates a MR should be scheduled",
    )
    gitlab_parent.add_argument(
        "--config-file-path",
        default=DEFAULT_CONFIG_FILE_PATH,
        help="Path of the config file in the repo which is used to configure merge windows",
    )
    gitlab_parent.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"Timeout in seconds for GitLab API calls (default: {DEFAULT_TIMEOUT_SECONDS:g})",
    )

    subparsers.add_parser("run", parents=[gitlab_parent], help="Process scheduled merge requests once")

    daemon_parser = subparsers.add_parser(
        "daemon",
        parents=[gitlab_parent],
        help="Process scheduled merge requests periodically",
    )
    daemon_parser.add_argument(
        "--task-schedule",
        default=DEFAULT_TASK_SCHEDULE,
        help=f'Cron schedule or "@every <duration>" for processing (default: "{DEFAULT_TASK_SCHEDULE}")',
    )

    check_parser = subparsers.add_parser("check", help="Evaluate a local schedule file")
    check_parser.add_argument("--file", default=DEFAULT_CONFIG_FILE_PATH, help="Schedule file to evaluate")
    check_parser.add_argument("--at", help="ISO datetime to evaluate at (default: now)")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        if args.command == "check":
            return command_check(Path(args.file).resolve(), at=args.at)

        config = TaskConfig(scheduled_label=args.scheduled_label, config_file_path=args.config_file_path)
        gitlab_config = build_gitlab_config(args)
        if args.command == "run":
            return command_run(connect_client(gitlab_config), config)
        if args.command == "daemon":
            parse_task_schedule(args.task_schedule)
            return command_daemon(connect_client(gitlab_config), config, args.task_schedule)
        raise ScheduledMergeError(f"Unsupported command: {args.command}")
    except ScheduledMergeError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
