# MIT License
# Copyright (c) 2025 Hashborn

"""
Observability Module

Provides metrics for the sync orchestrator.
"""

from .metrics import metrics_registry, update_cycle_metrics

__all__ = ['metrics_registry', 'update_cycle_metrics']
