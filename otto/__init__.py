"""Otto: watches pull requests, fixes failing CI and answers review comments."""
