"""Agent process execution: spawning, stream rendering, idle supervision."""
