"""Network, directive and action services."""
