"""Host <-> instance call protocol: wire models, correlated channel, typed client."""
