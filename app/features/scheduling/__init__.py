"""Station scheduling: proposed meetings, station constraints and conflict resolution."""
