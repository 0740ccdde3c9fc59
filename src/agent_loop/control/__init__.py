"""Sentinel-file control signals, loop session state and the control plane."""
