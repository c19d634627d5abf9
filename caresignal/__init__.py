"""Care signal intelligence pipeline.

Turns raw care events (vital signs, task completions, staffing actions) into
baselines, anomalies, risk scores and ranked issues for supervisor review.
"""
