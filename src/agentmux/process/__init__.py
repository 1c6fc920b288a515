"""Process layer — spawners, runners and the supervisor that owns live sessions."""
