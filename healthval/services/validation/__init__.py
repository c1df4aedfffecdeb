"""
Validation execution: engine, batch pipeline and cancellation/retry.
"""
