"""Core data types: meshes, skeletons, configuration, events, spatial queries."""
