# analytics/services.py
from __future__ import annotations

import datetime as dt
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pytz
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .models import ActionType, StudyEvent

logger = logging.getLogger(__name__)

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)
DAY_MS = 24 * 60 * 60 * 1000

# Engagement-time proxy used by the duration estimator and the calendar/streak
# rules. Override any key through settings.STUDY_ANALYTICS.
DEFAULT_HEURISTICS: Dict[str, float] = {
    "base_minutes": 1,
    "chars_per_minute": 500,
    "quiz_generation_bonus": 2,
    "exam_minutes_per_mark": 1.5,
    "streak_gap_days": 1.5,
    "week_window_days": 7,
    "top_topics_limit": 5,
}

CALENDAR_DAYS = 7

# Keys that divide or bound a window; zero would make them meaningless.
_POSITIVE_KEYS = frozenset({"chars_per_minute", "week_window_days", "top_topics_limit"})

WEEKDAY_LABELS = ("M", "T", "W", "T", "F", "S", "S")

STOP_WORDS = frozenset({
    "the", "is", "in", "at", "of", "on", "and", "a", "to", "for",
    "with", "as", "by", "an", "are", "it", "this", "that", "from",
})
_NON_WORD = re.compile(r"[^\w\s]")


def get_heuristics(overrides: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
    """
    Built-in defaults, then settings.STUDY_ANALYTICS, then explicit overrides.
    Unknown keys are ignored. A value that is not a finite number, is negative,
    or is zero for a divisor/window key keeps the previous value.
    """
    merged = dict(DEFAULT_HEURISTICS)
    for source in (getattr(settings, "STUDY_ANALYTICS", None) or {}, overrides or {}):
        for key, value in source.items():
            if key not in DEFAULT_HEURISTICS:
                continue
            if _valid_heuristic(key, value):
                merged[key] = value
            else:
                logger.warning("ignoring invalid analytics heuristic %s=%r", key, value)
    return merged


def _valid_heuristic(key: str, value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value) or value < 0:
        return False
    return value > 0 or key not in _POSITIVE_KEYS


def _to_aware_utc(x: str | dt.datetime | int | float) -> dt.datetime:
    """Parse an ISO string, datetime or epoch milliseconds into a tz-aware datetime in UTC."""
    if isinstance(x, str):
        d = parse_datetime(x)
        if d is None:
            raise ValueError("now must be ISO-8601")
    elif isinstance(x, dt.datetime):
        d = x
    elif isinstance(x, (int, float)) and not isinstance(x, bool):
        return _EPOCH + dt.timedelta(milliseconds=x)
    else:
        raise TypeError("now must be str, datetime or epoch milliseconds")
    if timezone.is_naive(d):
        d = timezone.make_aware(d, dt.timezone.utc)
    return d.astimezone(dt.timezone.utc)


def to_epoch_ms(d: dt.datetime) -> int:
    return (_to_aware_utc(d) - _EPOCH) // dt.timedelta(milliseconds=1)


def _field(event: Any, name: str) -> Any:
    """Read an attribute from a model instance or a key from a mapping."""
    if isinstance(event, Mapping):
        return event.get(name)
    return getattr(event, name, None)


def _number(value: Any) -> float:
    """Coerce an optional numeric field; anything missing or unusable counts as 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(v) or v < 0:
        return 0.0
    return v


def _timestamp_ms(event: Any) -> Optional[int]:
    value = _field(event, "timestamp")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _local_date(ms: Optional[int], tz: dt.tzinfo) -> Optional[dt.date]:
    """Local calendar day of an epoch-milliseconds timestamp."""
    if ms is None:
        return None
    try:
        return (_EPOCH + dt.timedelta(milliseconds=ms)).astimezone(tz).date()
    except (OverflowError, OSError, ValueError):
        return None


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _round_one_decimal(x: float) -> float:
    return math.floor(x * 10 + 0.5) / 10


def _whole_as_int(x: float) -> int | float:
    """18.0 -> 18; 12.5 stays 12.5."""
    return int(x) if float(x).is_integer() else x


def _percent(part: float, whole: float) -> int:
    if whole <= 0:
        return 0
    return max(0, min(100, _round_half_up(100.0 * part / whole)))


def extract_keywords(text: Optional[str], limit: int = 5) -> List[str]:
    """
    Derive informal topic tags from free text.
    Lowercase, drop punctuation, keep words longer than 3 characters that are
    not stop words, de-duplicate in first-seen order and keep the first `limit`.
    """
    if not text:
        return []
    out: List[str] = []
    for word in _NON_WORD.sub("", text.lower()).split():
        if len(word) <= 3 or word in STOP_WORDS or word in out:
            continue
        out.append(word)
        if len(out) >= limit:
            break
    return out


def event_duration_minutes(event: Any, heuristics: Optional[Mapping[str, float]] = None) -> int:
    """
    Estimated study minutes for a single event.

    Rules:
      1) quiz_complete with a question count: one minute per question.
      2) exam_complete with total marks: ceil(total_marks * exam_minutes_per_mark).
      3) Anything else: base_minutes, plus ceil(text_length / chars_per_minute)
         when there is text, plus quiz_generation_bonus for a generated quiz.
    """
    h = heuristics if heuristics is not None else get_heuristics()
    action = _field(event, "action_type")

    if action == ActionType.QUIZ_COMPLETE:
        questions = _number(_field(event, "quiz_total_questions"))
        if questions > 0:
            return int(math.ceil(questions))
    if action == ActionType.EXAM_COMPLETE:
        total_marks = _number(_field(event, "exam_total_marks"))
        if total_marks > 0:
            return int(math.ceil(total_marks * h["exam_minutes_per_mark"]))

    minutes = h["base_minutes"]
    text_length = _number(_field(event, "text_length"))
    if text_length > 0:
        minutes += math.ceil(text_length / h["chars_per_minute"])
    if action == ActionType.QUIZ:
        minutes += h["quiz_generation_bonus"]
    return int(minutes)


def compute_streaks(
    active_days: Iterable[dt.date], today: dt.date, gap_days: float = 1.5
) -> Tuple[int, int]:
    """
    Return (current_streak, longest_streak) over distinct active calendar days.
    Consecutive entries belong to one run while they are at most `gap_days` apart.
    The current streak only survives when the latest active day is today or yesterday.
    """
    days = sorted(set(active_days))
    if not days:
        return 0, 0

    longest = 0
    run = 0
    for i, day in enumerate(days):
        if i and (day - days[i - 1]).days <= gap_days:
            run += 1
        else:
            run = 1
        longest = max(longest, run)

    current = 0
    if days[-1] in (today, today - dt.timedelta(days=1)):
        current = 1
        for i in range(len(days) - 1, 0, -1):
            if (days[i] - days[i - 1]).days > gap_days:
                break
            current += 1
    return current, longest


def last_days_calendar(active_days: Iterable[dt.date], today: dt.date, n: int = 7) -> List[Dict]:
    """One entry per day from today-(n-1) to today, oldest first."""
    studied = set(active_days)
    out = []
    for offset in range(n - 1, -1, -1):
        day = today - dt.timedelta(days=offset)
        out.append({
            "day": WEEKDAY_LABELS[day.weekday()],
            "date": day.isoformat(),
            "studied": day in studied,
        })
    return out


def rank_topics(events: Iterable[Any], limit: int = 5) -> List[Dict]:
    """
    Count keywords across events and return the `limit` most frequent.
    Equal counts keep the order in which the keyword first appeared in `events`.
    """
    counts: Dict[str, int] = {}
    for event in events:
        keywords = _field(event, "topic_keywords")
        if not isinstance(keywords, (list, tuple)):
            continue
        for keyword in keywords:
            if not isinstance(keyword, str):
                continue
            k = keyword.strip().lower()
            if k:
                counts[k] = counts.get(k, 0) + 1
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [{"topic": topic, "count": count} for topic, count in ranked[:limit]]


def compute_stats(
    events: Iterable[Any],
    now: str | dt.datetime | int | float,
    *,
    tz: str = "UTC",
    heuristics: Optional[Mapping[str, float]] = None,
) -> Dict:
    """
    Fold a user's event log into a stats snapshot.

    Events may arrive in any order and are never modified. Calendar-day rules
    (today, this month, streaks, the 7-day calendar) use the local date in `tz`;
    "this week" is the trailing window of week_window_days * 24h ending at `now`.
    Missing or malformed optional fields contribute zero.
    """
    h = get_heuristics(heuristics)
    tzinfo = pytz.timezone(tz)
    now_utc = _to_aware_utc(now)
    now_ms = to_epoch_ms(now_utc)
    today = now_utc.astimezone(tzinfo).date()
    week_start_ms = now_ms - int(h["week_window_days"] * DAY_MS)

    # (event, timestamp_ms, local_date, minutes), chronological; undated events last
    entries = []
    for event in events:
        ms = _timestamp_ms(event)
        entries.append((event, ms, _local_date(ms, tzinfo), event_duration_minutes(event, h)))
    entries.sort(key=lambda e: (e[1] is None, e[1] or 0))

    def in_week(ms: Optional[int]) -> bool:
        return ms is not None and ms > week_start_ms

    def in_month(day: Optional[dt.date]) -> bool:
        return day is not None and (day.year, day.month) == (today.year, today.month)

    # 1) Sessions
    sessions = [e for e in entries if _field(e[0], "action_type") == ActionType.CREATE_SESSION]

    # 2) Study time
    total_time = sum(minutes for _, _, _, minutes in entries)
    time_today = sum(minutes for _, _, day, minutes in entries if day == today)
    time_week = sum(minutes for _, ms, _, minutes in entries if in_week(ms))

    # 3) Quizzes
    quizzes_generated = sum(1 for e in entries if _field(e[0], "action_type") == ActionType.QUIZ)
    quiz_completions = [e[0] for e in entries if _field(e[0], "action_type") == ActionType.QUIZ_COMPLETE]
    total_quiz_questions = sum(int(_number(_field(q, "quiz_total_questions"))) for q in quiz_completions)
    total_quiz_correct = sum(int(_number(_field(q, "quiz_correct_answers"))) for q in quiz_completions)

    # 4) Exams
    exam_completions = [e[0] for e in entries if _field(e[0], "action_type") == ActionType.EXAM_COMPLETE]
    exam_scores: List[float] = []
    exam_accuracies: List[float] = []
    for ev in exam_completions:
        score = _number(_field(ev, "exam_score"))
        total = max(_number(_field(ev, "exam_total_marks")), 1.0)
        exam_scores.append(score)
        exam_accuracies.append(min(100.0, 100.0 * score / total))
    exams_taken = len(exam_scores)

    # 5) Streaks and calendar
    active_days = {day for _, _, day, _ in entries if day is not None}
    current_streak, longest_streak = compute_streaks(active_days, today, h["streak_gap_days"])

    stats = {
        "total_sessions": len(sessions),
        "sessions_today": sum(1 for _, _, day, _ in sessions if day == today),
        "sessions_this_week": sum(1 for _, ms, _, _ in sessions if in_week(ms)),
        "sessions_this_month": sum(1 for _, _, day, _ in sessions if in_month(day)),
        "total_time_minutes": int(total_time),
        "study_time_today": int(time_today),
        "study_time_this_week": int(time_week),
        "quizzes_generated": quizzes_generated,
        "total_quizzes_taken": len(quiz_completions),
        "quiz_accuracy": _percent(total_quiz_correct, total_quiz_questions),
        "total_quiz_questions": total_quiz_questions,
        "total_quiz_correct": total_quiz_correct,
        "total_exams_taken": exams_taken,
        "exam_average_accuracy": (
            max(0, min(100, _round_half_up(sum(exam_accuracies) / exams_taken))) if exams_taken else 0
        ),
        "exam_average_score": _round_one_decimal(sum(exam_scores) / exams_taken) if exams_taken else 0.0,
        "exam_best_score": _whole_as_int(max(exam_scores, default=0)),
        "current_streak": current_streak,
        "longest_streak": longest_streak,
        "last_seven_days": last_days_calendar(active_days, today, CALENDAR_DAYS),
        "top_topics": rank_topics((e[0] for e in entries), int(h["top_topics_limit"])),
    }
    logger.debug("computed stats over %d events (tz=%s, today=%s)", len(entries), tz, today)
    return stats


def get_user_stats(user_id: str, now: str | dt.datetime | None = None, *, tz: str = "UTC") -> Dict:
    """Load a user's full event log and aggregate it."""
    if now is None:
        now = timezone.now()
    events = list(StudyEvent.objects.filter(user_id=user_id).order_by("timestamp"))
    return compute_stats(events, now, tz=tz)
