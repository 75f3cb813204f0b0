"""
architectures.py
~~~~~~~~~~~~~~~~

Declarative network descriptions for MNIST, consumed by
:func:`digitnet.network.build_network`.
"""

# LeNet-style network: 28x28 -> conv5 -> 24x24 -> pool -> 12x12 -> conv5
# -> 8x8 -> pool -> 4x4 -> 512 -> 10 -> softmax. Trained with cross-entropy.
CONV_NET = [
    {'type': 'input'},
    {'type': 'convolution', 'out_channels': 6, 'in_channels': 1,
     'kernel_size': 5, 'stride': 1, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'max_pooling', 'kernel_size': 2, 'stride': 2},
    {'type': 'relu'},
    {'type': 'convolution', 'out_channels': 16, 'in_channels': 6,
     'kernel_size': 5, 'stride': 1, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'max_pooling', 'kernel_size': 2, 'stride': 2},
    {'type': 'relu'},
    {'type': 'fully_connected', 'outputs': 512, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'fully_connected', 'outputs': 10, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'softmax'},
]

# Three dense layers, trained with mean squared error
MLP_NET = [
    {'type': 'input'},
    {'type': 'fully_connected', 'outputs': 512, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'fully_connected', 'outputs': 256, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'fully_connected', 'outputs': 10, 'use_bias': True},
    {'type': 'relu'},
    {'type': 'softmax'},
]

ARCHITECTURES = {
    'conv': (CONV_NET, 'cross_entropy'),
    'mlp': (MLP_NET, 'mse'),
}


def get_architecture(name: str):
    """
    Look up a named architecture.

    Returns:
        tuple: (layer descriptions, loss name)
    """
    if name not in ARCHITECTURES:
        raise ValueError(
            f"Unknown architecture: {name}. Choose from {sorted(ARCHITECTURES)}"
        )
    layers, loss = ARCHITECTURES[name]
    return [dict(layer) for layer in layers], loss
