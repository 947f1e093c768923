"""Role & assignment resolution and route guards."""
