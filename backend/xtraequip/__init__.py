"""xtraEquip marketplace API."""
