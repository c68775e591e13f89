"""Detailed grid model and its reduction to calculation buses."""
