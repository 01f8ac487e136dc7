"""Address and coordinate helpers shared by the pipeline stages."""
