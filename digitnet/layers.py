"""
layers.py
~~~~~~~~~

Layer contract and the closed set of layer variants used by the network:
Input, Convolution, MaxPooling, ReLU, FullyConnected and Softmax.

Every layer works on (N, C, H, W) tensors. ``forward`` caches whatever
``backward`` needs for the same batch, ``backward`` sums parameter
gradients over the batch, and ``update_parameters`` applies them once.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from digitnet.exceptions import ShapeMismatchError
from digitnet.tensor import Tensor, Shape

logger = logging.getLogger(__name__)

# Byte layout of serialized parameter buffers
PARAM_DTYPE = np.dtype('<f8')


@dataclass
class ParameterRecord:
    """Raw parameter buffers of one layer, as written to a model file."""

    layer_type: str
    weight_shape: Optional[Tuple[int, ...]] = None
    weight: Optional[bytes] = None
    bias_shape: Optional[Tuple[int, ...]] = None
    bias: Optional[bytes] = None


def _pair(value) -> Tuple[int, int]:
    """Expand an int or a 2-sequence into an (h, w) pair."""
    if isinstance(value, (tuple, list)):
        return int(value[0]), int(value[1])
    return int(value), int(value)


def _xavier_uniform(rng: np.random.Generator, shape, fan_in: int,
                    fan_out: int) -> np.ndarray:
    """Xavier/Glorot uniform initialization."""
    limit = np.sqrt(6.0 / (fan_in + fan_out))
    return rng.uniform(-limit, limit, shape)


def extract_patches(arr: np.ndarray, kernel_size: Tuple[int, int],
                    stride: Tuple[int, int]) -> np.ndarray:
    """
    Extract sliding window patches from a 4D array.

    Args:
        arr: Input array of shape (N, C, H, W)
        kernel_size: Tuple (kernel_h, kernel_w)
        stride: Tuple (stride_h, stride_w)

    Returns:
        Read-only view of shape (N, C, out_h, out_w, kernel_h, kernel_w)
    """
    windows = np.lib.stride_tricks.sliding_window_view(
        arr, kernel_size, axis=(2, 3)
    )
    return windows[:, :, ::stride[0], ::stride[1]]


class Layer:
    """
    Base class for all layers.

    Subclasses override ``_initialize``, ``forward`` and ``backward``.
    Layers with learnable parameters store them as ``weight`` and
    ``bias`` tensors and sum their gradients into ``_weight_grad`` and
    ``_bias_grad`` during ``backward``.
    """

    type_tag: str = ''

    def __init__(self):
        self.input_shape: Optional[Shape] = None
        self.output_shape: Optional[Shape] = None
        self.weight: Optional[Tensor] = None
        self.bias: Optional[Tensor] = None
        self._weight_grad: Optional[np.ndarray] = None
        self._bias_grad: Optional[np.ndarray] = None
        self._accumulated_samples = 0

    @property
    def initialized(self) -> bool:
        return self.output_shape is not None

    @property
    def has_parameters(self) -> bool:
        return self.weight is not None

    @property
    def weight_grad(self) -> Optional[np.ndarray]:
        """Weight gradient summed since the last update."""
        return self._weight_grad

    @property
    def bias_grad(self) -> Optional[np.ndarray]:
        """Bias gradient summed since the last update."""
        return self._bias_grad

    def initialize(self, input_shape, rng: Optional[np.random.Generator] = None) -> Shape:
        """
        Bind the layer to an input shape and allocate its parameters.

        Args:
            input_shape: (N, C, H, W) of the tensors this layer will receive
            rng: Random generator for weight initialization

        Returns:
            The (N, C, H, W) shape of this layer's output

        Raises:
            ShapeMismatchError: If the hyperparameters do not fit the input
        """
        input_shape = tuple(int(dim) for dim in input_shape)
        if len(input_shape) != 4:
            raise ShapeMismatchError(
                f"{self!r} expects an (N, C, H, W) input shape, got {input_shape}"
            )
        if rng is None:
            rng = np.random.default_rng()
        output_shape = self._initialize(input_shape, rng)
        self.input_shape = input_shape
        self.output_shape = tuple(int(dim) for dim in output_shape)
        logger.debug(f"Initialized {self!r}: {input_shape} -> {self.output_shape}")
        return self.output_shape

    def _initialize(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        return input_shape

    def _check_input(self, tensor: Tensor) -> None:
        """Initialize on first use and check the per-sample input shape."""
        if not self.initialized:
            self.initialize(tensor.shape)
        if tensor.shape[1:] != self.input_shape[1:]:
            raise ShapeMismatchError(
                f"{self!r} expects samples of shape {self.input_shape[1:]}, "
                f"got {tensor.shape[1:]}"
            )

    def forward(self, input_data: Tensor) -> Tensor:
        """Forward pass through the layer."""
        raise NotImplementedError

    def backward(self, output_gradient: Tensor) -> Tensor:
        """Backward pass through the layer."""
        raise NotImplementedError

    def _allocate_parameters(self, weight: np.ndarray, bias_shape=None) -> None:
        self.weight = Tensor.from_array(weight)
        self._weight_grad = np.zeros(self.weight.shape)
        if bias_shape is not None:
            self.bias = Tensor(bias_shape)
            self._bias_grad = np.zeros(self.bias.shape)

    def _accumulate(self, weight_grad: np.ndarray,
                    bias_grad: Optional[np.ndarray], samples: int) -> None:
        self._weight_grad += weight_grad.reshape(self._weight_grad.shape)
        if self.bias is not None:
            self._bias_grad += bias_grad.reshape(self._bias_grad.shape)
        self._accumulated_samples += samples

    def update_parameters(self, learning_rate: float) -> None:
        """
        Apply ``param -= learning_rate * grad / batch_size`` and clear grads.

        ``batch_size`` is the number of samples whose gradients were summed
        since the previous update.
        """
        if not self.has_parameters or self._accumulated_samples == 0:
            return
        scale = learning_rate / self._accumulated_samples
        weight = self.weight.data
        weight -= scale * self._weight_grad
        if self.bias is not None:
            bias = self.bias.data
            bias -= scale * self._bias_grad
        self.clear_gradients()

    def clear_gradients(self) -> None:
        if self._weight_grad is not None:
            self._weight_grad.fill(0.0)
        if self._bias_grad is not None:
            self._bias_grad.fill(0.0)
        self._accumulated_samples = 0

    def serialize_parameters(self) -> ParameterRecord:
        """Export weight and bias buffers verbatim."""
        record = ParameterRecord(layer_type=self.type_tag)
        if self.weight is not None:
            record.weight_shape = self.weight.shape
            record.weight = self.weight.data.astype(PARAM_DTYPE).tobytes()
        if self.bias is not None:
            record.bias_shape = self.bias.shape
            record.bias = self.bias.data.astype(PARAM_DTYPE).tobytes()
        return record

    def deserialize_parameters(self, record: ParameterRecord) -> None:
        """
        Import weight and bias buffers.

        Nothing is modified unless the record matches this layer's type
        and current parameter shapes exactly.

        Raises:
            ShapeMismatchError: If the record disagrees with this layer
        """
        if record.layer_type != self.type_tag:
            raise ShapeMismatchError(
                f"Cannot load '{record.layer_type}' parameters into {self!r}"
            )
        weight = self._decode(record.weight_shape, record.weight, self.weight, 'weight')
        bias = self._decode(record.bias_shape, record.bias, self.bias, 'bias')
        if weight is not None:
            self.weight.data[...] = weight
        if bias is not None:
            self.bias.data[...] = bias
        self.clear_gradients()

    def _decode(self, shape, buffer: Optional[bytes], target: Optional[Tensor],
                name: str) -> Optional[np.ndarray]:
        if target is None:
            if buffer is not None:
                raise ShapeMismatchError(f"{self!r} has no {name} to load")
            return None
        if buffer is None or shape is None:
            raise ShapeMismatchError(f"Missing {name} for {self!r}")
        shape = tuple(int(dim) for dim in shape)
        if shape != target.shape:
            raise ShapeMismatchError(
                f"{self!r} {name} shape is {target.shape}, stored shape is {shape}"
            )
        if len(buffer) != target.element_count() * PARAM_DTYPE.itemsize:
            raise ShapeMismatchError(
                f"{self!r} {name} buffer holds {len(buffer)} bytes, expected "
                f"{target.element_count() * PARAM_DTYPE.itemsize}"
            )
        return np.frombuffer(buffer, dtype=PARAM_DTYPE).reshape(shape)

    def get_config(self) -> Dict[str, Any]:
        """Hyperparameters as a declarative layer description."""
        return {'type': self.type_tag}

    def __repr__(self) -> str:
        params = ', '.join(
            f"{key}={value}" for key, value in self.get_config().items()
            if key != 'type'
        )
        return f"{self.__class__.__name__}({params})"


class Input(Layer):
    """Identity layer pinning the first shape of the chain."""

    type_tag = 'input'

    def forward(self, input_data: Tensor) -> Tensor:
        self._check_input(input_data)
        return input_data

    def backward(self, output_gradient: Tensor) -> Tensor:
        return output_gradient


class Convolution(Layer):
    """
    2D convolution with learnable kernels, stride and zero padding.

    Kernel shape is (out_channels, in_channels, kernel_h, kernel_w) and the
    optional bias holds one value per output channel.
    """

    type_tag = 'convolution'

    def __init__(self, out_channels: int, kernel_size, stride=1, padding=0,
                 in_channels: Optional[int] = None, use_bias: bool = True):
        """
        Args:
            out_channels (int): Number of kernels
            kernel_size (int or tuple): Kernel (h, w)
            stride (int or tuple): Step between windows (h, w)
            padding (int or tuple): Implicit zeros added on each side (h, w)
            in_channels (int, optional): Expected input channels, checked
                against the incoming shape when given
            use_bias (bool): Whether to learn a per-channel bias
        """
        super().__init__()
        self.out_channels = int(out_channels)
        self.kernel_size = _pair(kernel_size)
        self.stride = _pair(stride)
        self.padding = _pair(padding)
        self.in_channels = None if in_channels is None else int(in_channels)
        self.use_bias = use_bias
        self._padded_input = None

    def _initialize(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        n, c, h, w = input_shape
        kh, kw = self.kernel_size
        sh, sw = self.stride
        ph, pw = self.padding
        if self.in_channels is not None and self.in_channels != c:
            raise ShapeMismatchError(
                f"{self!r} expects {self.in_channels} input channels, got {c}"
            )
        if sh < 1 or sw < 1 or ph < 0 or pw < 0:
            raise ShapeMismatchError(
                f"{self!r} needs positive strides and non-negative padding"
            )
        if kh < 1 or kw < 1 or kh > h + 2 * ph or kw > w + 2 * pw:
            raise ShapeMismatchError(
                f"{self!r} kernel does not fit input {h}x{w} with padding {ph}x{pw}"
            )
        self.in_channels = c
        out_h = (h + 2 * ph - kh) // sh + 1
        out_w = (w + 2 * pw - kw) // sw + 1

        fan_in = kh * kw * c
        fan_out = kh * kw * self.out_channels
        self._allocate_parameters(
            _xavier_uniform(rng, (self.out_channels, c, kh, kw), fan_in, fan_out),
            bias_shape=(1, self.out_channels, 1, 1) if self.use_bias else None
        )
        return n, self.out_channels, out_h, out_w

    def _pad(self, x: np.ndarray) -> np.ndarray:
        ph, pw = self.padding
        if ph == 0 and pw == 0:
            return x
        return np.pad(x, ((0, 0), (0, 0), (ph, ph), (pw, pw)), mode='constant')

    def forward(self, input_data: Tensor) -> Tensor:
        """Forward pass: sliding-window dot product + bias"""
        self._check_input(input_data)
        self._padded_input = self._pad(input_data.data)
        patches = extract_patches(self._padded_input, self.kernel_size, self.stride)
        output = np.einsum('nchwij,ocij->nohw', patches, self.weight.data,
                           optimize=True)
        if self.bias is not None:
            output += self.bias.data
        return Tensor.from_array(output)

    def backward(self, output_gradient: Tensor) -> Tensor:
        """Backward pass: kernel, bias and input gradients"""
        upstream = output_gradient.data
        kh, kw = self.kernel_size
        sh, sw = self.stride
        ph, pw = self.padding
        _, _, out_h, out_w = upstream.shape

        patches = extract_patches(self._padded_input, self.kernel_size, self.stride)
        weight_grad = np.einsum('nchwij,nohw->ocij', patches, upstream,
                                optimize=True)
        bias_grad = upstream.sum(axis=(0, 2, 3)) if self.bias is not None else None
        self._accumulate(weight_grad, bias_grad, upstream.shape[0])

        # Scatter each kernel tap back onto the input positions it read.
        # For stride 1 this is the full correlation of the zero-padded
        # upstream gradient with the spatially flipped kernel.
        kernel = self.weight.data
        padded_grad = np.zeros(self._padded_input.shape)
        for i in range(kh):
            for j in range(kw):
                padded_grad[:, :, i:i + sh * out_h:sh, j:j + sw * out_w:sw] += (
                    np.einsum('nohw,oc->nchw', upstream, kernel[:, :, i, j])
                )
        height = padded_grad.shape[2] - 2 * ph
        width = padded_grad.shape[3] - 2 * pw
        return Tensor.from_array(padded_grad[:, :, ph:ph + height, pw:pw + width])

    def get_config(self) -> Dict[str, Any]:
        return {
            'type': self.type_tag,
            'out_channels': self.out_channels,
            'kernel_size': list(self.kernel_size),
            'stride': list(self.stride),
            'padding': list(self.padding),
            'in_channels': self.in_channels,
            'use_bias': self.use_bias
        }


class MaxPooling(Layer):
    """
    Max pooling layer for spatial dimension reduction.

    The in-window argmax of every output element is recorded during the
    forward pass; ties go to the first maximum in row-major window order.
    """

    type_tag = 'max_pooling'

    def __init__(self, kernel_size=2, stride=None):
        super().__init__()
        self.kernel_size = _pair(kernel_size)
        self.stride = self.kernel_size if stride is None else _pair(stride)
        self._argmax = None
        self._prev_shape = None

    def _initialize(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        n, c, h, w = input_shape
        kh, kw = self.kernel_size
        sh, sw = self.stride
        if sh < 1 or sw < 1:
            raise ShapeMismatchError(f"{self!r} needs positive strides")
        if kh < 1 or kw < 1 or kh > h or kw > w:
            raise ShapeMismatchError(
                f"{self!r} window does not fit input {h}x{w}"
            )
        return n, c, (h - kh) // sh + 1, (w - kw) // sw + 1

    def forward(self, input_data: Tensor) -> Tensor:
        """Forward pass: max pooling"""
        self._check_input(input_data)
        patches = extract_patches(input_data.data, self.kernel_size, self.stride)
        flat = patches.reshape(patches.shape[:4] + (-1,))
        # np.argmax keeps the first occurrence of the maximum
        self._argmax = np.argmax(flat, axis=-1)
        self._prev_shape = input_data.shape
        output = np.take_along_axis(flat, self._argmax[..., np.newaxis], axis=-1)
        return Tensor.from_array(output[..., 0])

    def backward(self, output_gradient: Tensor) -> Tensor:
        """Backward pass: route gradients to the recorded max locations"""
        upstream = output_gradient.data
        n, c, out_h, out_w = upstream.shape
        kw = self.kernel_size[1]
        sh, sw = self.stride

        rows = np.arange(out_h)[:, np.newaxis] * sh + self._argmax // kw
        cols = np.arange(out_w)[np.newaxis, :] * sw + self._argmax % kw
        batch_idx = np.arange(n)[:, np.newaxis, np.newaxis, np.newaxis]
        channel_idx = np.arange(c)[np.newaxis, :, np.newaxis, np.newaxis]

        input_grad = np.zeros(self._prev_shape)
        np.add.at(input_grad, (batch_idx, channel_idx, rows, cols), upstream)
        return Tensor.from_array(input_grad)

    def get_config(self) -> Dict[str, Any]:
        return {
            'type': self.type_tag,
            'kernel_size': list(self.kernel_size),
            'stride': list(self.stride)
        }


class ReLU(Layer):
    """ReLU activation layer: f(x) = max(0, x)"""

    type_tag = 'relu'

    def __init__(self):
        super().__init__()
        self._prev_input = None

    def forward(self, input_data: Tensor) -> Tensor:
        self._check_input(input_data)
        self._prev_input = input_data.data.copy()
        return Tensor.from_array(np.maximum(self._prev_input, 0.0))

    def backward(self, output_gradient: Tensor) -> Tensor:
        return Tensor.from_array(output_gradient.data * (self._prev_input > 0))


class FullyConnected(Layer):
    """
    Fully connected layer over the flattened C * H * W features of a sample.

    Weight shape is (outputs, inputs); the output tensor is
    (N, outputs, 1, 1).
    """

    type_tag = 'fully_connected'

    def __init__(self, outputs: int, use_bias: bool = True,
                 inputs: Optional[int] = None):
        super().__init__()
        self.outputs = int(outputs)
        self.inputs = None if inputs is None else int(inputs)
        self.use_bias = use_bias
        self._prev_input = None
        self._prev_shape = None

    def _initialize(self, input_shape: Shape, rng: np.random.Generator) -> Shape:
        n, c, h, w = input_shape
        inputs = c * h * w
        if self.inputs is not None and self.inputs != inputs:
            raise ShapeMismatchError(
                f"{self!r} expects {self.inputs} input features, got {inputs}"
            )
        if self.outputs < 1 or inputs < 1:
            raise ShapeMismatchError(f"{self!r} cannot connect {inputs} inputs")
        self.inputs = inputs
        self._allocate_parameters(
            _xavier_uniform(rng, (self.outputs, inputs, 1, 1), inputs, self.outputs),
            bias_shape=(1, self.outputs, 1, 1) if self.use_bias else None
        )
        return n, self.outputs, 1, 1

    def _matrix(self) -> np.ndarray:
        return self.weight.data.reshape(self.outputs, self.inputs)

    def forward(self, input_data: Tensor) -> Tensor:
        """Forward pass: weight . x + bias for every sample"""
        self._check_input(input_data)
        n = input_data.batch_size
        self._prev_shape = input_data.shape
        self._prev_input = input_data.data.reshape(n, -1).copy()
        output = self._prev_input @ self._matrix().T
        if self.bias is not None:
            output += self.bias.data.reshape(1, -1)
        return Tensor.from_array(output.reshape(n, self.outputs, 1, 1))

    def backward(self, output_gradient: Tensor) -> Tensor:
        upstream = output_gradient.data.reshape(output_gradient.batch_size, -1)
        weight_grad = upstream.T @ self._prev_input
        bias_grad = upstream.sum(axis=0) if self.bias is not None else None
        self._accumulate(weight_grad, bias_grad, upstream.shape[0])
        input_grad = upstream @ self._matrix()
        return Tensor.from_array(input_grad.reshape(self._prev_shape))

    def get_config(self) -> Dict[str, Any]:
        return {
            'type': self.type_tag,
            'outputs': self.outputs,
            'use_bias': self.use_bias,
            'inputs': self.inputs
        }


class Softmax(Layer):
    """
    Softmax activation over the channel dimension.

    The backward pass is the full Jacobian-vector product, so the layer
    can be followed by any loss functor.
    """

    type_tag = 'softmax'

    def __init__(self):
        super().__init__()
        self._prev_result = None

    def forward(self, input_data: Tensor) -> Tensor:
        """Forward pass: numerically stable softmax"""
        self._check_input(input_data)
        x = input_data.data
        exp_x = np.exp(x - np.max(x, axis=1, keepdims=True))
        self._prev_result = exp_x / np.sum(exp_x, axis=1, keepdims=True)
        return Tensor.from_array(self._prev_result)

    def backward(self, output_gradient: Tensor) -> Tensor:
        """Backward pass: J^T g = y * (g - sum(g * y))"""
        upstream = output_gradient.data
        y = self._prev_result
        dot = np.sum(upstream * y, axis=1, keepdims=True)
        return Tensor.from_array(y * (upstream - dot))


LAYER_TYPES = {
    layer_cls.type_tag: layer_cls
    for layer_cls in (Input, Convolution, MaxPooling, ReLU, FullyConnected, Softmax)
}


def create_layer(config: Dict[str, Any]) -> Layer:
    """
    Factory function to get layer instances from a declarative description.

    Args:
        config (dict): ``{'type': tag, **hyperparameters}``

    Returns:
        Layer instance

    Raises:
        ValueError: If the type tag is unknown
    """
    config = dict(config)
    layer_type = config.pop('type', None)
    if layer_type not in LAYER_TYPES:
        raise ValueError(f"Unknown layer type: {layer_type}")
    return LAYER_TYPES[layer_type](**config)
