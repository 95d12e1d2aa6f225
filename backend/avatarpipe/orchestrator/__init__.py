"""Orchestration core: state, admission, polling, quorum, cancellation and the stage runner."""
