"""Per-unit calculation network model.

Built from a detailed grid by ``network.builder.build_networks``: one
``Network`` per synchronous component, with merged voltage controls, slack
buses and tap-changing pi-models.
"""
