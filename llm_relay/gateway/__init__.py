"""LLM Gateway Client Layer.

Resilient request orchestration for remote LLM HTTP APIs:
  - Response Cache (TTL, lazy eviction)
  - Sliding-window Rate Limiter (requests per minute)
  - Retry with exponential backoff and jitter
  - Pre/post/error Middleware Pipeline
  - Incremental Stream Decoder (server-sent events)
  - Dispatcher, Batch Coordinator and Cancellation Registry
  - Cost Estimator
"""
