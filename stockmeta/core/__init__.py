"""
Core Application Logic and Batch Orchestration
==============================================

This package contains the foundational business logic for Stockmeta,
including the row model and its state machine, the credential store, the
batch generation pipeline, keyword normalization, result persistence, and
CSV export.
"""
