"""Progress reporting and timing summaries for solver runs."""
