"""
Service layer: scoring, answer persistence, attempt lifecycle, result
aggregation and the session-statistics scheduler.
"""
