from .retry import compute_backoff, next_retry_at, schedule_retry, utcnow

__all__ = ["compute_backoff", "next_retry_at", "schedule_retry", "utcnow"]
