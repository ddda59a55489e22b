"""Per-context agents that wire detectors to forwarders."""
