"""Pipeline services: containers, transformation, bulk export and loading."""
