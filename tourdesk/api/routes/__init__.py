"""Route modules for the TourDesk API."""
