"""
Input validation for Gatekeeper.

Rejects bad values at the component boundary before they reach shared state.
"""

from typing import Optional


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 50
MAX_ALERT_THRESHOLD = 100.0


def validate_concurrency(limit: int) -> None:
    """
    Validate a concurrency ceiling.

    Args:
        limit: Maximum number of simultaneously executing operations

    Raises:
        ValidationError: If limit is not an integer in [1, 50]
    """
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError(
            f"Concurrency limit must be an integer, got {type(limit).__name__}"
        )

    if limit < MIN_CONCURRENCY or limit > MAX_CONCURRENCY:
        raise ValidationError(
            f"Concurrency limit must be between {MIN_CONCURRENCY} and "
            f"{MAX_CONCURRENCY}, got {limit}"
        )


def validate_token_counts(input_tokens: int, output_tokens: int) -> None:
    """
    Validate token counts reported for a usage record.

    Raises:
        ValidationError: If either count is negative or not an integer
    """
    for name, value in (("input_tokens", input_tokens), ("output_tokens", output_tokens)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer, got {type(value).__name__}")
        if value < 0:
            raise ValidationError(f"{name} cannot be negative, got {value}")


def validate_budget_limits(
    daily_limit: float,
    monthly_limit: float,
    alert_threshold: float,
) -> None:
    """
    Validate budget limits for a user.

    Raises:
        ValidationError: If a limit is negative or the threshold is out of range
    """
    for name, value in (("daily_limit", daily_limit), ("monthly_limit", monthly_limit)):
        if not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number, got {type(value).__name__}")
        if value < 0:
            raise ValidationError(f"{name} cannot be negative, got {value}")

    if not isinstance(alert_threshold, (int, float)):
        raise ValidationError(
            f"alert_threshold must be a number, got {type(alert_threshold).__name__}"
        )

    if alert_threshold <= 0 or alert_threshold > MAX_ALERT_THRESHOLD:
        raise ValidationError(
            f"alert_threshold must be in (0, {MAX_ALERT_THRESHOLD:.0f}], got {alert_threshold}"
        )


def validate_batch_options(
    batch_size: int,
    delay_between_batches: float,
    timeout: Optional[float] = None,
) -> None:
    """
    Validate batch execution options.

    Raises:
        ValidationError: If batch size is not positive or a duration is negative
    """
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValidationError(f"batch_size must be a positive integer, got {batch_size!r}")

    if delay_between_batches < 0:
        raise ValidationError(
            f"delay_between_batches cannot be negative, got {delay_between_batches}"
        )

    if timeout is not None and timeout <= 0:
        raise ValidationError(f"timeout must be positive, got {timeout}")
