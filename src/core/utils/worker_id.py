"""Worker ID generation using coolnames for readable identifiers."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "") -> str:
    """Generate a worker ID that is easy to grep for in logs.

    Args:
        prefix: Optional prefix (e.g., "shard-runner")

    Returns:
        "prefix-word1-word2-word3", or "word1-word2-word3" without a prefix

    Examples:
        >>> generate_worker_id("shard-runner")
        'shard-runner-swift-blue-falcon'
    """
    slug = generate_slug(3)
    return f"{prefix}-{slug}" if prefix else slug
