"""Visitor tracking service: visit and login logging with retention and analytics."""
