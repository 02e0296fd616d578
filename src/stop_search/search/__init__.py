"""Budgeted stop search: capabilities, retrieval cascade and orchestration."""
