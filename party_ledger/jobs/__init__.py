"""
Background Jobs for Party Ledger.

- vote_sweeper: scheduled resolution of expired nominations
"""

from .vote_sweeper import run_vote_sweep

__all__ = ["run_vote_sweep"]
