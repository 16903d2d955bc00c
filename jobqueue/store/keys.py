"""
Redis key layout for one queue prefix.
"""


class Keyspace:
    """Builds every key a queue touches from its prefix."""

    def __init__(self, prefix: str = "q"):
        self.prefix = prefix

    @property
    def ids(self) -> str:
        return f"{self.prefix}:ids"

    @property
    def types(self) -> str:
        return f"{self.prefix}:job:types"

    @property
    def work_time(self) -> str:
        return f"{self.prefix}:stats:work-time"

    @property
    def events(self) -> str:
        return f"{self.prefix}:events"

    @property
    def settings(self) -> str:
        return f"{self.prefix}:settings"

    def job(self, job_id: int) -> str:
        return f"{self.prefix}:job:{job_id}"

    def state(self, state: str, job_type: str | None = None) -> str:
        """Ordered collection for `state`, optionally narrowed to one job type."""
        if job_type is None:
            return f"{self.prefix}:jobs:{state}"
        return f"{self.prefix}:jobs:{job_type}:{state}"
