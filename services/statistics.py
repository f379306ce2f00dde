"""
Results summary derived from the aggregated counters on every read.

This is descriptive only. ``needs_more_data`` is a fixed minimum-sample gate that
stops the console from presenting a winner on tiny samples; it is not a t-test,
does not produce confidence intervals and says nothing about significance.
"""
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from data.database import Experiment
from models.results import ExperimentResultsSummary, VariantResult, VariantCounters, Comparison, TreatmentComparison
from services.aggregator import snapshot
from services.lifecycle import get_experiment
import logging

logger = logging.getLogger(__name__)

# Below this many participants in total a comparison is flagged as unreliable
MIN_PARTICIPANTS_FOR_COMPARISON = 100
CONTROL_VARIANT_NAME = "Control"


def conversion_rate(conversions: int, participants: int) -> float:
    """Percentage with one decimal; 0.0 when nobody participated."""
    if participants <= 0:
        return 0.0
    return round(conversions / participants * 100, 1)


def relative_lift(control_rate: float, treatment_rate: float) -> float:
    """Percent change of treatment over control; 0.0 when control converts at 0."""
    if control_rate == 0:
        return 0.0
    return round((treatment_rate - control_rate) / control_rate * 100, 1)


def needs_more_data(total_participants: int) -> bool:
    return total_participants < MIN_PARTICIPANTS_FOR_COMPARISON


def pick_control(variant_names: list[str]) -> str:
    """The variant named 'Control', otherwise the first declared one."""
    if CONTROL_VARIANT_NAME in variant_names:
        return CONTROL_VARIANT_NAME
    return variant_names[0]


def build_summary(experiment: Experiment, counters: dict[str, VariantCounters]) -> ExperimentResultsSummary:
    """Pure computation of the summary from a counter snapshot in declared variant order."""
    names = list(counters.keys())
    total = sum(c.participants for c in counters.values())

    rates = {name: conversion_rate(c.conversions, c.participants) for name, c in counters.items()}
    variants = [
        VariantResult(
            name=name,
            participants=c.participants,
            conversions=c.conversions,
            conversion_rate=rates[name],
        )
        for name, c in counters.items()
    ]

    control = pick_control(names)
    # Lift is taken from the reported rates so the two always agree
    treatments = [
        TreatmentComparison(
            variant=name,
            conversion_rate=rates[name],
            relative_lift=relative_lift(rates[control], rates[name]),
        )
        for name in names if name != control
    ]
    primary = treatments[0]

    comparison = Comparison(
        control_variant=control,
        control_conversion_rate=rates[control],
        treatment_variant=primary.variant,
        treatment_conversion_rate=primary.conversion_rate,
        relative_lift=primary.relative_lift,
        needs_more_data=needs_more_data(total),
        treatments=treatments,
    )

    return ExperimentResultsSummary(
        experiment_id=experiment.id,
        experiment_name=experiment.name,
        status=experiment.status,
        total_participants=total,
        report_generated_at=datetime.now(timezone.utc),
        variants=variants,
        comparison=comparison,
    )


def summarize(db: Session, experiment_id: int) -> ExperimentResultsSummary:
    experiment = get_experiment(db, experiment_id)
    counters = snapshot(db, experiment_id)
    summary = build_summary(experiment, counters)
    logger.debug("summary for EID %d: total=%d needs_more_data=%s",
                 experiment_id, summary.total_participants, summary.comparison.needs_more_data)
    return summary
