"""Domain services: merging, classification, busy config and availability."""
