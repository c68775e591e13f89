"""AC and DC equation systems with analytical Jacobians."""
