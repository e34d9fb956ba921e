"""GitLab access for the merge scheduler."""
