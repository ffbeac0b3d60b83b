"""
Cache Keys and Tags

Pure helpers that derive:
- A deterministic cache key from (input data, goals, schema version, AI flag)
- The invalidation tag set for a cached result

Key rules:
- Record order inside entries/emotions/sensory inputs is significant and kept
- Goal order is not significant; goal ids are sorted
- The configuration schema version is folded into every key, so a schema
  change moves every request to a fresh key
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from compass_analytics.config.analytics import SCHEMA_VERSION, AnalyticsConfiguration
from compass_analytics.models import AnalyticsData, AnalyticsResults, Goal


KEY_PREFIX = "insights"

TAG_ANALYTICS = "analytics"
TAG_AI = "ai"
TAG_WORKER = "worker"

TagExtractor = Callable[[Union[AnalyticsData, AnalyticsResults]], Iterable[str]]


def subject_tag(subject_id: Any) -> str:
    """Tag shared by every entry computed for one subject (student)."""
    return f"subject-{subject_id}"


def goal_tag(goal_id: Any) -> str:
    return f"goal-{goal_id}"


def month_tag(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{TAG_ANALYTICS}-{now.year}-{now.month}"


def _goal_ids(goals: Optional[List[Goal]]) -> List[str]:
    return sorted(str(goal.id) for goal in (goals or []) if goal.id)


def _canonical(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def create_cache_key(
    data: AnalyticsData,
    goals: Optional[List[Goal]] = None,
    config: Optional[AnalyticsConfiguration] = None,
    use_ai: bool = False,
) -> str:
    """
    Create a deterministic cache key for an analytics request.

    Args:
        data: Input data set
        goals: Goals included in the computation (only ids matter)
        config: Live configuration; its schema_version is part of the key
        use_ai: Whether the AI path was requested

    Returns:
        Key of the form "insights:<schema>:<digest>|ai=<0|1>"
    """
    schema_version = config.schema_version if config else SCHEMA_VERSION
    payload = {
        "entries": data.entries,
        "emotions": data.emotions,
        "sensory_inputs": data.sensory_inputs,
        "goals": _goal_ids(goals if goals is not None else data.goals),
        "schema_version": schema_version,
    }
    digest = hashlib.sha256(_canonical(payload).encode()).hexdigest()[:32]
    return f"{KEY_PREFIX}:{schema_version}:{digest}|ai={'1' if use_ai else '0'}"


def extract_tags_from_data(
    data: Union[AnalyticsData, AnalyticsResults],
    now: Optional[datetime] = None,
) -> Set[str]:
    """Default data-derived tags: analytics, per-subject and month bucket."""
    tags = {TAG_ANALYTICS}

    if isinstance(data, AnalyticsData):
        for records in (data.entries, data.emotions, data.sensory_inputs):
            for record in records:
                student_id = record.get("student_id")
                if student_id:
                    tags.add(subject_tag(student_id))

    # Date bucket for time-based invalidation
    tags.add(month_tag(now))
    return tags


def build_cache_tags(
    data: Union[AnalyticsData, AnalyticsResults],
    goals: Optional[List[Goal]] = None,
    subject_id: Optional[Any] = None,
    include_ai_tag: bool = False,
    extract: Optional[TagExtractor] = None,
    now: Optional[datetime] = None,
) -> Set[str]:
    """
    Build the full invalidation tag set for a cached result.

    Always a superset of the data-derived tags, plus goal, subject and AI
    tags from the request metadata.
    """
    if extract is not None:
        tags = set(extract(data) or ())
    else:
        tags = extract_tags_from_data(data, now=now)

    for goal in goals or []:
        if goal.id:
            tags.add(goal_tag(goal.id))
        if goal.student_id:
            tags.add(subject_tag(goal.student_id))

    if subject_id is not None and subject_id != "":
        tags.add(subject_tag(subject_id))

    if include_ai_tag:
        tags.add(TAG_AI)

    return tags
