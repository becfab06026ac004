"""
linepipe.core — Relay loop, configuration, event log and process supervision.
"""
