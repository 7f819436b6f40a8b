"""LabPulse: GitLab access layer and activity analytics."""
