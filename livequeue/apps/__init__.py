"""Demo applications built on livequeue."""
