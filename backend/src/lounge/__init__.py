"""Live lounge room coordination and realtime relay."""
