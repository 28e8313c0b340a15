import datetime
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

DEFAULT_INTERVAL = 1
DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3

PASSING_QUALITY = 3
KNOWN_QUALITY = 4
UNKNOWN_QUALITY = 2


class MasteryLevel(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    MASTERED = "mastered"


@dataclass(frozen=True)
class MasteryPolicy:
    """Thresholds used to bucket a review state into a mastery level."""
    mastered_accuracy: float = 0.9
    mastered_min_attempts: int = 5
    mastered_flag_interval: int = 10
    review_accuracy: float = 0.7
    review_min_attempts: int = 3
    review_interval: int = 6


DEFAULT_MASTERY_POLICY = MasteryPolicy()


@dataclass(frozen=True)
class Schedule:
    interval: int
    ease_factor: float
    next_review: datetime.date


@dataclass(frozen=True)
class ReviewOutcome:
    interval: int
    ease_factor: float
    next_review: datetime.date
    mastery_level: MasteryLevel
    correct_count: int
    incorrect_count: int
    quality: int


def utc_today() -> datetime.date:
    return datetime.datetime.now(datetime.UTC).date()


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def sm2_schedule(
    quality: int,
    interval: int = DEFAULT_INTERVAL,
    ease_factor: float = DEFAULT_EASE_FACTOR,
    today: Optional[datetime.date] = None,
) -> Schedule:
    """
    SM-2 (SuperMemo 2) interval calculation.

    Quality grades (0-5):
      0-2 – incorrect, or recalled only after seeing the answer
      3   – correct with serious difficulty
      4   – correct after some hesitation
      5   – perfect, instant recall

    Algorithm:
      1. Update the E-Factor and floor it at 1.3.
      2. quality < 3           → interval 1 (lapse)
         previous interval 1   → interval 6 (first graduation)
         otherwise             → previous interval × new E-Factor, rounded
      3. next review = today + new interval.

    Inputs are expected to be validated already; this function never raises.
    """
    # Step 1: Update ease factor (the new EF feeds the interval below)
    distance = 5 - quality
    new_ef = ease_factor + (0.1 - distance * (0.08 + distance * 0.02))
    if new_ef < MIN_EASE_FACTOR:
        new_ef = MIN_EASE_FACTOR

    # Step 2: Determine new interval
    if quality < PASSING_QUALITY:
        new_interval = 1
    elif interval == 1:
        new_interval = 6
    else:
        new_interval = max(1, _round_half_up(interval * new_ef))

    # Step 3: Next review date
    base_date = today if today is not None else utc_today()
    return Schedule(
        interval=new_interval,
        ease_factor=new_ef,
        next_review=base_date + datetime.timedelta(days=new_interval),
    )


def quality_from_known(known: bool) -> int:
    """Map a flashcard known/unknown answer onto the 0-5 quality scale."""
    return KNOWN_QUALITY if known else UNKNOWN_QUALITY


def classify_mastery(
    interval: int,
    correct_count: int,
    incorrect_count: int,
    flagged: bool = False,
    policy: MasteryPolicy = DEFAULT_MASTERY_POLICY,
) -> MasteryLevel:
    attempts = correct_count + incorrect_count
    if attempts == 0:
        return MasteryLevel.NEW

    accuracy = correct_count / attempts
    if accuracy >= policy.mastered_accuracy and attempts >= policy.mastered_min_attempts:
        return MasteryLevel.MASTERED
    if flagged and interval >= policy.mastered_flag_interval:
        return MasteryLevel.MASTERED
    if accuracy >= policy.review_accuracy and attempts >= policy.review_min_attempts:
        return MasteryLevel.REVIEW
    if interval > policy.review_interval:
        return MasteryLevel.REVIEW
    return MasteryLevel.LEARNING


def apply_review(
    quality: int,
    prior: Optional[Any] = None,
    flagged: bool = False,
    today: Optional[datetime.date] = None,
    policy: MasteryPolicy = DEFAULT_MASTERY_POLICY,
) -> ReviewOutcome:
    """Schedule one review event and classify the resulting state.

    `prior` is any object with `interval`, `ease_factor`, `correct_count` and
    `incorrect_count` attributes, or None for an item never reviewed before.
    Mastery is evaluated on the post-review interval and counts.
    """
    if prior is None:
        interval, ease_factor = DEFAULT_INTERVAL, DEFAULT_EASE_FACTOR
        correct_count = incorrect_count = 0
    else:
        interval, ease_factor = prior.interval, prior.ease_factor
        correct_count, incorrect_count = prior.correct_count, prior.incorrect_count

    if quality >= PASSING_QUALITY:
        correct_count += 1
    else:
        incorrect_count += 1

    schedule = sm2_schedule(quality, interval, ease_factor, today=today)
    level = classify_mastery(
        schedule.interval, correct_count, incorrect_count, flagged=flagged, policy=policy
    )
    return ReviewOutcome(
        interval=schedule.interval,
        ease_factor=schedule.ease_factor,
        next_review=schedule.next_review,
        mastery_level=level,
        correct_count=correct_count,
        incorrect_count=incorrect_count,
        quality=quality,
    )
