"""
Marathon event sync Django application.

This app schedules source checks, fetches and deduplicates raw content,
reconciles extracted fields into canonical marathon editions and drives
the human review queue for low-confidence extractions.
"""
