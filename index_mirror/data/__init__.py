"""
Mirror state and its synchronization.

This package is responsible for:
* Acquiring the local copy of the upstream index repository.
* Refreshing it into new snapshots and swapping the current one atomically.
* Driving refreshes on a fixed interval.
"""
