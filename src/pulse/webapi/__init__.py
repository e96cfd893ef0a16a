"""Web API for Pulse: alert run triggers and ops endpoints."""
