"""Concrete graph operations. Importing this package registers all of them."""

from .activation import EluOp, LeakyReLUOp, ReLUOp, SigmoidOp, SoftmaxOp, TanhOp
from .conv import Conv2dBiasActivationOp, Conv2dOp, Pool2dOp, UpSample2dOp, bias_shape
from .elementwise import (
    AddOp,
    DivideOp,
    ExpOp,
    LogOp,
    MultiplyOp,
    NegativeOp,
    PowOp,
    SqrtOp,
    SubtractOp,
)
from .linalg import MatMulOp, TransposeOp
from .reduction import MeanOp, SumOp
from .regularization import BatchNormOp, DropoutOp, batch_norm_param_shape
from .shape_ops import ConcatenateOp, ReshapeOp

__all__ = [
    "AddOp",
    "BatchNormOp",
    "ConcatenateOp",
    "Conv2dBiasActivationOp",
    "Conv2dOp",
    "DivideOp",
    "DropoutOp",
    "EluOp",
    "ExpOp",
    "LeakyReLUOp",
    "LogOp",
    "MatMulOp",
    "MeanOp",
    "MultiplyOp",
    "NegativeOp",
    "Pool2dOp",
    "PowOp",
    "ReLUOp",
    "ReshapeOp",
    "SigmoidOp",
    "SoftmaxOp",
    "SqrtOp",
    "SubtractOp",
    "SumOp",
    "TanhOp",
    "TransposeOp",
    "UpSample2dOp",
    "batch_norm_param_shape",
    "bias_shape",
]
