"""Pipeline stages: normalize, select, invoke, transform."""
