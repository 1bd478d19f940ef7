"""
Exceptions raised during SIM parameter estimation and reconstruction
"""


class SimReconstructionError(Exception):
    pass


class InputShapeError(SimReconstructionError, ValueError):
    """
    Raw frame, OTF grid, or parameter set dimensions are not compatible
    """
    pass


class ConfigurationError(SimReconstructionError, ValueError):
    """
    Invalid OTF, parameter set, or settings
    """
    pass


class EstimationFailure(SimReconstructionError, RuntimeError):
    """
    No sufficiently strong illumination peak was found for a pattern direction
    """

    def __init__(self,
                 direction: int,
                 message: str):
        self.direction = direction
        super().__init__(f"direction {direction:d}: {message:s}")


class ReconstructionPrecondition(SimReconstructionError, RuntimeError):
    """
    Reconstruction was requested with unset or failed illumination parameters
    """
    pass
