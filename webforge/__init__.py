"""webforge: prompt-driven edits on Next.js projects with a supervised, self-healing preview."""

__version__ = "1.0.0"
