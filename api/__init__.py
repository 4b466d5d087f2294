"""
Verity — HTTP Surface

FastAPI front door over a WorkflowRuntime: start/query/signal/cancel,
signed provider webhooks, health and metrics.
"""
