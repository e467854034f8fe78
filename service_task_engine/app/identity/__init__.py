"""Identity resolution between external user ids and personnel records."""
