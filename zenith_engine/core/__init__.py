"""Domain types shared by the optimizer: parameters, reports, jobs and errors."""
