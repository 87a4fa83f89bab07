"""Domain types shared across planes: work items, cycles, workers, queries, events."""
