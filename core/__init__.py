"""Core domain types shared by the geofence and report subsystems."""
