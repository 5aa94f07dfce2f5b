"""
Core modules for Try-On Core.

This package contains the credit reservation ledger, the generation job
state machine, worker dispatch and the scenario cache.
"""
