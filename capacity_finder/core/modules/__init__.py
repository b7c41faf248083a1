# Core modules for capacity_finder
