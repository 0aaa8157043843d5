"""Apple Silicon power, thermal and wakeup telemetry monitor."""
