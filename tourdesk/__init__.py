"""TourDesk back office for tour operators."""
