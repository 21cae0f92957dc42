from workflow_poll_client.models import BackoffMode, PollingConfig


def next_delay(attempt: int, config: PollingConfig) -> float:
    """Calculates the wait before fetch number ``attempt`` (1-based).

    Fixed mode always waits ``base_interval``. Exponential mode doubles the
    interval per attempt starting from ``base_interval`` and never exceeds
    ``max_interval``.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    if config.backoff_mode == BackoffMode.fixed:
        return config.base_interval

    delay = config.base_interval * (2 ** (attempt - 1))
    return min(delay, config.max_interval)
