"""Service orchestration layer: coordinates multi-service workflows.

Modules:
- job_service: Job-mutating entry points (saves, transitions, payments, visual quote kickoff).
- task_pipeline: Background work executed by the task workers (visual quote analysis, inventory debit).
"""
