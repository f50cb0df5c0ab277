"""Domain services. Import from the submodules directly."""
