"""
Terrain segmentation.

Every accepted sample casts a (terrain, confidence) vote. The open segment only
switches terrain once a challenger has accumulated enough confidence to clear
the hysteresis threshold, which keeps noisy classifications from fragmenting
the track. Manually set segments are pinned: neither the live segmenter nor
reclassify() changes them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from ..config import RuckCoreConfig
from ..errors import SegmentationAmbiguous, InvalidSessionData
from ..models import TerrainType, TerrainSegment, LocationPoint
from ..utils.calculations import grade_percent
from ..utils.geo import haversine_distance
from .grade_calculator import GradeTracker

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
HINT_DEFAULT_CONFIDENCE = 0.8


@dataclass
class TerrainVote:
    timestamp: datetime
    terrain_type: TerrainType
    confidence: float


@dataclass
class _Span:
    start: datetime
    end: Optional[datetime]
    terrain_type: TerrainType
    manual: bool = False
    votes: List[TerrainVote] = field(default_factory=list)
    stored_confidence: Optional[float] = None

    @property
    def duration(self) -> float:
        return (self.end - self.start).total_seconds()


class TerrainClassifier:
    """Per-sample terrain estimate from a surface hint, or from grade and speed."""

    def __init__(self, default_terrain=TerrainType.PAVED_ROAD):
        self.default_terrain = TerrainType.parse(default_terrain)

    def classify(self, sample, grade: float = 0.0) -> Tuple[TerrainType, float]:
        if sample.terrain_hint:
            try:
                terrain = TerrainType.parse(sample.terrain_hint)
            except InvalidSessionData:
                logger.warning(f"[TERRAIN] Ignoring unknown terrain hint {sample.terrain_hint!r}")
            else:
                confidence = sample.terrain_confidence
                return terrain, HINT_DEFAULT_CONFIDENCE if confidence is None else confidence

        # Steep, slow climbing reads as stairs
        if abs(grade) >= 30.0 and sample.speed < 1.0:
            return TerrainType.STAIRS, 0.5

        return self.default_terrain, FALLBACK_CONFIDENCE


def span_confidence(span: _Span) -> float:
    if span.manual:
        return 1.0
    if not span.votes and span.stored_confidence is not None:
        return span.stored_confidence
    total = sum(v.confidence for v in span.votes)
    agreeing = [v.confidence for v in span.votes if v.terrain_type == span.terrain_type]
    if total <= 0 or not agreeing:
        return FALLBACK_CONFIDENCE
    agreement = sum(agreeing) / total
    mean_agreeing = sum(agreeing) / len(agreeing)
    return max(0.0, min(1.0, agreement * mean_agreeing))


def span_grade(start: datetime, end: datetime, points: Sequence[LocationPoint]) -> float:
    inside = [p for p in points if start <= p.timestamp <= end]
    if len(inside) < 2:
        return 0.0
    run = 0.0
    for a, b in zip(inside, inside[1:]):
        run += haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)
    return grade_percent(inside[-1].best_altitude - inside[0].best_altitude, run)


def merge_short_spans(spans: List[_Span], min_duration: float) -> List[_Span]:
    """Fold spans shorter than min_duration into a neighbour, then coalesce equal neighbours."""
    merged: List[_Span] = []
    for span in spans:
        if merged and span.duration < min_duration and not span.manual and not merged[-1].manual:
            merged[-1].end = span.end
            merged[-1].votes.extend(span.votes)
            continue
        merged.append(span)

    # The first span has no predecessor, so it folds forward
    if len(merged) > 1 and merged[0].duration < min_duration and not merged[0].manual and not merged[1].manual:
        merged[1].start = merged[0].start
        merged[1].votes = merged[0].votes + merged[1].votes
        merged.pop(0)

    return coalesce_spans(merged)


def coalesce_spans(spans: List[_Span]) -> List[_Span]:
    result: List[_Span] = []
    for span in spans:
        previous = result[-1] if result else None
        if (previous is not None and not previous.manual and not span.manual
                and previous.terrain_type == span.terrain_type):
            previous.end = span.end
            previous.votes.extend(span.votes)
            continue
        result.append(span)
    return result


class TerrainSegmenter:
    def __init__(self, session_start: datetime, config: Optional[RuckCoreConfig] = None,
                 classifier: Optional[TerrainClassifier] = None):
        self.config = config or RuckCoreConfig()
        self.classifier = classifier or TerrainClassifier(self.config.default_terrain)
        self.session_start = session_start
        self.ambiguities: List[SegmentationAmbiguous] = []
        self._closed: List[_Span] = []
        self._open = _Span(start=session_start, end=None, terrain_type=self.classifier.default_terrain)
        self._open_has_votes = False
        self._challenger: Optional[TerrainType] = None
        self._challenger_since: Optional[datetime] = None
        self._challenger_weight = 0.0
        self._challenger_votes: List[TerrainVote] = []
        self.grade_tracker = GradeTracker(self.config)
        self._last_seen: Optional[datetime] = None

    @property
    def current_terrain(self) -> TerrainType:
        return self._open.terrain_type

    def observe(self, sample) -> bool:
        """Record one accepted sample; returns True when it closed a segment."""
        terrain, confidence = self.classifier.classify(sample, self.grade_tracker.update(sample))
        self._last_seen = sample.timestamp
        vote = TerrainVote(sample.timestamp, terrain, confidence)

        if self._open.manual:
            self._open.votes.append(vote)
            return False

        if not self._open_has_votes:
            self._open.terrain_type = terrain
            self._open.votes.append(vote)
            self._open_has_votes = True
            return False

        if terrain == self._open.terrain_type:
            self._drop_challenger()
            self._open.votes.append(vote)
            return False

        if terrain != self._challenger:
            self._drop_challenger()
            self._challenger = terrain
            self._challenger_since = sample.timestamp

        self._challenger_votes.append(vote)
        self._challenger_weight += confidence
        if self._challenger_weight < self.config.hysteresis_threshold:
            return False

        logger.debug(f"[TERRAIN] Switching {self._open.terrain_type.value} -> {terrain.value} at {self._challenger_since.isoformat()}")
        new_span = _Span(start=self._challenger_since, end=None, terrain_type=terrain,
                         votes=list(self._challenger_votes))
        self._challenger = None
        self._challenger_votes = []
        self._challenger_weight = 0.0
        self._challenger_since = None
        return self._replace_open(new_span)

    def override(self, terrain_type, at: datetime) -> TerrainType:
        """Pin the terrain from `at` onwards until the next override."""
        terrain = TerrainType.parse(terrain_type)
        self._drop_challenger()
        at = self._clamp(at)
        self._replace_open(_Span(start=at, end=None, terrain_type=terrain, manual=True))
        self._open_has_votes = True
        logger.info(f"[TERRAIN] Manual override to {terrain.value} at {at.isoformat()}")
        return terrain

    def clear_override(self, at: datetime) -> bool:
        """Return to automatic classification from `at`."""
        if not self._open.manual:
            return False
        at = self._clamp(at)
        self._replace_open(_Span(start=at, end=None, terrain_type=self._open.terrain_type))
        self._open_has_votes = False
        logger.info(f"[TERRAIN] Manual override cleared at {at.isoformat()}")
        return True

    def restore(self, segments: Sequence[TerrainSegment], last_point: Optional[LocationPoint] = None):
        """Continue from persisted segments; the last one becomes the open segment."""
        spans = [
            _Span(s.start_time, s.end_time, s.terrain_type, manual=s.is_manually_set, stored_confidence=s.confidence)
            for s in segments
        ]
        self._drop_challenger()
        if last_point is not None:
            self.grade_tracker.update(last_point)
            self._last_seen = last_point.timestamp
        if not spans:
            return
        self._closed = spans[:-1]
        self._open = spans[-1]
        self._open.end = None
        self._open_has_votes = True

    def snapshot(self, now: datetime, points: Sequence[LocationPoint] = ()) -> List[TerrainSegment]:
        """Current segments with the open one ending at `now`; no merging is applied."""
        spans = [_copy_span(s) for s in self._closed]
        open_span = _copy_span(self._open)
        open_span.votes.extend(self._challenger_votes)
        if now > open_span.start:
            open_span.end = now
            spans.append(open_span)
        return [self._to_segment(s, points) for s in spans]

    def settled(self) -> Tuple[datetime, List[TerrainSegment]]:
        """
        Horizon before which no later sample, override or stop can change the
        terrain, together with the merged segments covering it.

        A pending switch backdates at most to its challenger's first vote, and
        without one the open segment runs at least to the last sample seen. A
        segment that may still end up shorter than min_segment_duration_s
        can fold into its neighbour, so it does not count as settled.
        """
        min_duration = self.config.min_segment_duration_s
        open_span = self._open
        if not self._open_has_votes:
            reach = open_span.start
        elif self._challenger_since is not None:
            reach = self._challenger_since
        else:
            reach = max(open_span.start, self._last_seen or open_span.start)

        spans = [_Span(s.start, s.end, s.terrain_type, s.manual) for s in self._closed]
        open_settled = reach > open_span.start and (
            open_span.manual or (reach - open_span.start).total_seconds() >= min_duration
        )
        if open_settled:
            spans.append(_Span(open_span.start, reach, open_span.terrain_type, open_span.manual))
        spans = merge_short_spans([s for s in spans if s.end > s.start], min_duration)

        if open_settled:
            horizon = reach
        elif len(spans) == 1 and not spans[0].manual and spans[0].duration < min_duration:
            # A lone short span takes the terrain of whatever follows it
            horizon = self.session_start
        else:
            horizon = open_span.start

        segments = [
            TerrainSegment(s.start, s.end, s.terrain_type, confidence=1.0 if s.manual else FALLBACK_CONFIDENCE,
                           is_manually_set=s.manual)
            for s in spans
        ]
        return horizon, segments

    def finalize(self, end_time: datetime, points: Sequence[LocationPoint] = ()) -> List[TerrainSegment]:
        """Close the track at end_time and return segments tiling [session_start, end_time]."""
        spans = [_copy_span(s) for s in self._closed]
        open_span = _copy_span(self._open)
        open_span.votes.extend(self._challenger_votes)
        if end_time > open_span.start:
            open_span.end = end_time
            spans.append(open_span)
        elif spans:
            spans[-1].end = end_time

        spans = [s for s in spans if s.end > s.start]
        spans = merge_short_spans(spans, self.config.min_segment_duration_s)
        segments = [self._to_segment(s, points) for s in spans]
        self._record_ambiguities(segments)
        return segments

    def _clamp(self, at: datetime) -> datetime:
        """Manual changes never reach back before the open segment or the last observed sample."""
        return max(at, self._open.start, self._last_seen or at)

    def _replace_open(self, new_span: _Span) -> bool:
        if new_span.start > self._open.start:
            self._open.end = new_span.start
            self._closed.append(self._open)
            self._open = new_span
            return True
        # Zero-length open segment: replace it in place
        new_span.votes = self._open.votes + new_span.votes
        self._open = new_span
        return False

    def _drop_challenger(self):
        self._open.votes.extend(self._challenger_votes)
        self._challenger = None
        self._challenger_votes = []
        self._challenger_weight = 0.0
        self._challenger_since = None

    def _to_segment(self, span: _Span, points: Sequence[LocationPoint]) -> TerrainSegment:
        return TerrainSegment(
            start_time=span.start,
            end_time=span.end,
            terrain_type=span.terrain_type,
            grade=span_grade(span.start, span.end, points),
            confidence=span_confidence(span),
            is_manually_set=span.manual,
        )

    def _record_ambiguities(self, segments: List[TerrainSegment]):
        for segment in segments:
            if not segment.is_manually_set and segment.confidence < self.config.ambiguity_confidence:
                ambiguity = SegmentationAmbiguous(
                    f"Low confidence {segment.confidence:.2f} for {segment.terrain_type.value} "
                    f"segment starting {segment.start_time.isoformat()}",
                    segment=segment,
                )
                self.ambiguities.append(ambiguity)
                logger.info(f"[TERRAIN][AMBIGUOUS] {ambiguity.message}")


def _copy_span(span: _Span) -> _Span:
    return _Span(span.start, span.end, span.terrain_type, span.manual, list(span.votes), span.stored_confidence)


def reclassify(segments: Sequence[TerrainSegment], points: Sequence[LocationPoint],
               classifier: Optional[TerrainClassifier] = None,
               config: Optional[RuckCoreConfig] = None) -> List[TerrainSegment]:
    """
    Re-derive automatic segments from the committed points.

    Segment boundaries are kept; each automatic segment takes the
    confidence-weighted majority terrain of the points inside it, and equal
    automatic neighbours are coalesced. Manually set segments pass through
    untouched.
    """
    classifier = classifier or TerrainClassifier()
    grades = GradeTracker(config)
    spans: List[_Span] = []
    votes_by_point = []
    for point in points:
        terrain, confidence = classifier.classify(point, grades.update(point))
        votes_by_point.append(TerrainVote(point.timestamp, terrain, confidence))

    for segment in segments:
        if segment.is_manually_set:
            spans.append(_Span(segment.start_time, segment.end_time, segment.terrain_type, manual=True))
            continue
        votes = [v for v in votes_by_point if segment.start_time <= v.timestamp < segment.end_time]
        terrain = segment.terrain_type
        if votes:
            weights = {}
            for v in votes:
                weights[v.terrain_type] = weights.get(v.terrain_type, 0.0) + v.confidence
            terrain = max(weights, key=weights.get)
        spans.append(_Span(segment.start_time, segment.end_time, terrain, votes=votes))

    result = []
    for span in coalesce_spans(spans):
        if span.manual:
            original = next(s for s in segments if s.is_manually_set and s.start_time == span.start)
            result.append(original)
            continue
        result.append(TerrainSegment(
            start_time=span.start,
            end_time=span.end,
            terrain_type=span.terrain_type,
            grade=span_grade(span.start, span.end, points),
            confidence=span_confidence(span) if span.votes else FALLBACK_CONFIDENCE,
            is_manually_set=False,
        ))
    return result


def override_segment(segments: Sequence[TerrainSegment], index: int, terrain_type) -> List[TerrainSegment]:
    """Return a copy of `segments` with one segment pinned to `terrain_type`."""
    if not 0 <= index < len(segments):
        raise InvalidSessionData(f"Segment index {index} out of range")
    terrain = TerrainType.parse(terrain_type)
    updated = list(segments)
    target = segments[index]
    updated[index] = TerrainSegment(
        start_time=target.start_time,
        end_time=target.end_time,
        terrain_type=terrain,
        grade=target.grade,
        confidence=1.0,
        is_manually_set=True,
    )
    return updated
