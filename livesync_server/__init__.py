"""HTTP surfaces for livesync collections."""
