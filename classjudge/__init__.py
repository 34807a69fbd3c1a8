"""Code execution, judging and deadline auto-submission for classroom exercises."""
