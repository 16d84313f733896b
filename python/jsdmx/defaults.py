"""Default values shared by the loader, model builder, sampler and reports."""

# Sampler
DEFAULT_DRAWS: int = 1000
DEFAULT_CHAINS: int = 2
DEFAULT_THIN: int = 1
DEFAULT_BURN_IN: int = 1000
DEFAULT_TARGET_ACCEPT: float = 0.9

# Latent factors per random level
DEFAULT_N_FACTORS: int = 2

# Priors
BETA_PRIOR_SD: float = 10.0
LAMBDA_PRIOR_SD: float = 1.0
SIGMA_PRIOR_SD: float = 1.0

# Diagnostics (reporting only, nothing is enforced)
RHAT_THRESHOLD: float = 1.1

# Posterior support used when filtering association and beta plots
SUPPORT_LEVEL: float = 0.65

# Naming conventions
INTERCEPT: str = "(Intercept)"
OWN_EFFECT: str = "own"

DISTRIBUTIONS: tuple[str, ...] = ("gaussian", "poisson", "probit")
