"""Host state tracking and aggregation for an osquery device fleet."""
