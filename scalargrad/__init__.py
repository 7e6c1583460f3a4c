from .autograd import (
    AutogradError,
    BorrowError,
    Config,
    GraphError,
    Mode,
    ModeError,
    Op,
    Value,
    add,
    configure,
    div,
    get_config,
    graph_stats,
    mul,
    neg,
    pow,
    relu,
    sub,
    topo_sort,
    use_mode,
)
from .nn import MLP, Layer, Neuron, loss

__version__ = '0.1.0'
