"""Control-limited iterative LQG / DDP trajectory optimization."""
