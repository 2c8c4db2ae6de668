"""Choose what to work on next: ranked, conflict-free dispatch and pickup."""
