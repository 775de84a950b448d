"""Error taxonomy for the experimentation engine."""


class EngineError(Exception):
    """Base class for every error the engine raises."""


class InsufficientData(EngineError):
    """Not enough visitors to evaluate yet. A no-op signal, not a failure."""

    def __init__(self, required: int, control_visitors: int, treatment_visitors: int):
        self.required = required
        self.control_visitors = control_visitors
        self.treatment_visitors = treatment_visitors
        super().__init__(
            f"need {required} visitors per variant, "
            f"have control={control_visitors} treatment={treatment_visitors}"
        )


class AnomalyDetected(EngineError):
    """A variant's live conversion rate left the site's baseline band."""

    def __init__(self, variant_id: int, observed: float, z: float):
        self.variant_id = variant_id
        self.observed = observed
        self.z = z
        super().__init__(
            f"variant {variant_id} conversion rate {observed:.4f} is {z:+.1f} sigma from baseline"
        )


class HypothesisGenerationFailed(EngineError):
    """The external generator could not produce a hypothesis."""


class PublishFailed(EngineError):
    """The publisher could not swap the live artifact; the decision stands."""


class NoActiveExperiment(EngineError):
    """The site has no running experiment; serve control without tracking."""

    def __init__(self, site_id: str):
        self.site_id = site_id
        super().__init__(f"no running experiment for site {site_id}")


class ConcurrentCycle(EngineError):
    """Another optimization cycle for the site is already in flight."""

    def __init__(self, site_id: str):
        self.site_id = site_id
        super().__init__(f"optimization cycle already running for site {site_id}")


class ExperimentNotFound(EngineError):
    def __init__(self, experiment_id: int):
        self.experiment_id = experiment_id
        super().__init__(f"experiment {experiment_id} not found")


class InvalidTransition(EngineError):
    def __init__(self, experiment_id: int, current: str, target: str):
        self.experiment_id = experiment_id
        self.current = current
        self.target = target
        super().__init__(f"experiment {experiment_id} cannot move from {current} to {target}")
