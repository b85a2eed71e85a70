"""
Pure engines for the invoice approval workflow.

Engines take domain aggregates and return results or raise typed errors.
They never touch the database, the clock (except via injection) or the
network.
"""

from invoice_engines.workflow import WorkflowEngine, compute_expected_role

__all__ = ["WorkflowEngine", "compute_expected_role"]
