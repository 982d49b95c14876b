"""Extraction and data-refresh orchestration for multi-tenant reporting.

Sluice decides when a tenant's scheduled reports are due, whether the
tenant's analytical dataset is fresh enough to query, and how a long-running
export job moves from submission to a downloadable artefact.

Sub-packages
------------
refresh
    Per-tenant refresh state machine and refresh token budget.
planner
    Recurrence planning for scheduled extractions.
exports
    Export job lifecycle, watchdogs, and post-processing.

"""
