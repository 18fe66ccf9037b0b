"""Round settlement service.

Watches a lottery-style round contract and makes sure every round is settled
once its end time passes: on startup, on indexer notifications, and through a
delayed job queue for rounds that have not ended yet.
"""

__all__: list[str] = []
