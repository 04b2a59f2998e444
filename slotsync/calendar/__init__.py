"""iCalendar parsing and recurrence expansion."""
