"""gridsens: steady-state load flow, contingency and sensitivity engine.

AC Newton-Raphson and DC load flow over a reduced per-unit network model,
security analysis under element outages and remedial actions, and
sensitivity factors (PTDF / phase-shifter / voltage sensitivities) with
fast contingency compensation.
"""

__version__ = "0.1.0"
