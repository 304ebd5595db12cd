# loop_forecast/core/dose_math.py
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from loop_forecast.core.date_math import floor_to_interval, hours
from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import AnnotatedDose, DoseRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliverySegment:
    start: datetime
    end: datetime
    volume: float  # U

    @property
    def rate(self) -> float:
        """U/h over the segment width."""
        hrs = hours(self.end - self.start)
        return self.volume / hrs if hrs > 0 else 0.0


def _trim_dose(dose: DoseRecord, start: datetime, end: datetime) -> DoseRecord:
    """Piece of a dose over [start, end], with volumes scaled by the covered fraction."""
    total = dose.duration.total_seconds()
    fraction = (end - start).total_seconds() / total if total > 0 else 1.0
    delivered = dose.delivered_volume * fraction if dose.delivered_volume is not None else None
    return replace(
        dose,
        start=start,
        end=end,
        programmed_volume=dose.programmed_volume * fraction,
        delivered_volume=delivered,
    )


def annotate_dose(dose: DoseRecord, basal: Schedule[float]) -> list[AnnotatedDose]:
    """
    Overlay one dose onto the basal schedule.

    Boluses pass through. Basal-like doses are split at every basal schedule
    boundary so each piece carries the single scheduled rate in effect over it.
    """
    if not dose.kind.is_basal_like:
        return [AnnotatedDose(dose)]

    if dose.duration == timedelta(0):
        return [AnnotatedDose(dose, basal.value_at(dose.start))]

    pieces: list[AnnotatedDose] = []
    cursor = dose.start
    for entry in basal.between(dose.start, dose.end):
        if entry.start > cursor:
            logger.warning("annotate_dose: no basal rate scheduled over %s -> %s", cursor, entry.start)
            pieces.append(AnnotatedDose(_trim_dose(dose, cursor, entry.start)))
        pieces.append(AnnotatedDose(_trim_dose(dose, entry.start, entry.end), entry.value))
        cursor = entry.end
    if cursor < dose.end:
        logger.warning("annotate_dose: no basal rate scheduled over %s -> %s", cursor, dose.end)
        pieces.append(AnnotatedDose(_trim_dose(dose, cursor, dose.end)))
    return pieces


def annotate_doses(doses: Iterable[DoseRecord], basal: Schedule[float]) -> list[AnnotatedDose]:
    out: list[AnnotatedDose] = []
    for dose in sorted(doses, key=lambda d: d.start):
        out.extend(annotate_dose(dose, basal))
    logger.debug("annotate_doses: %d annotated pieces", len(out))
    return out


def filter_doses(doses: Iterable[AnnotatedDose], start: datetime, end: datetime) -> list[AnnotatedDose]:
    """Doses whose delivery interval touches [start, end]."""
    return [d for d in doses if d.end >= start and d.start <= end]


def dose_segments(dose: DoseRecord, delta: timedelta) -> list[DeliverySegment]:
    """
    Split a dose into delta-wide, grid-aligned segments.

    Each segment holds the dose volume times the fraction of the dose's
    duration it covers, so the segment volumes always add up to the dose.
    """
    volume = dose.effective_volume
    seg_start = floor_to_interval(dose.start, delta)
    if dose.duration == timedelta(0):
        return [DeliverySegment(seg_start, seg_start + delta, volume)]

    total = dose.duration.total_seconds()
    segments: list[DeliverySegment] = []
    while seg_start < dose.end:
        seg_end = seg_start + delta
        covered = (min(seg_end, dose.end) - max(seg_start, dose.start)).total_seconds()
        segments.append(DeliverySegment(seg_start, seg_end, volume * covered / total))
        seg_start = seg_end
    return segments


def delivery_rate_timeline(
    doses: Iterable[DoseRecord],
    start: datetime,
    end: datetime,
    delta: timedelta,
) -> list[DeliverySegment]:
    """Sum the delivery segments of all doses onto the delta grid over [start, end)."""
    volumes: dict[datetime, float] = {}
    t = floor_to_interval(start, delta)
    while t < end:
        volumes[t] = 0.0
        t += delta
    for dose in doses:
        for seg in dose_segments(dose, delta):
            if seg.start in volumes:
                volumes[seg.start] += seg.volume
    return [DeliverySegment(t, t + delta, v) for t, v in volumes.items()]
