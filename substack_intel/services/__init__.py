"""Company resolution, progress channel, run lock and session scoping."""
