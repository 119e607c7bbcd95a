"""
Sync engine services.

- registry: source and binding management
- scheduler: due-binding selection
- orchestrator: the per-binding sync pipeline
- reconciliation: provenance-based field merging
- dispatcher: bounded pool and per-binding claims
- review_queue: human review of low-confidence extractions
"""
