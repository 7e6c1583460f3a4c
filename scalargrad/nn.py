import random

from .autograd import Value


class Neuron:
    def __init__(self, in_dim, nonlinear=True):
        self.w = [Value.from_scalar(random.uniform(-1, 1)) for _ in range(in_dim)]
        self.b = Value.from_scalar(0)
        self.nonlinear = nonlinear
        self.in_dim = in_dim

    def __call__(self, x):
        act = sum((wi * xi for wi, xi in zip(self.w, x)), start=self.b)
        return act.relu() if self.nonlinear else act

    def parameters(self):
        return self.w + [self.b]

    def __repr__(self):
        return f"Neuron: ({self.in_dim}, {'ReLU' if self.nonlinear else 'Linear'})"


class Layer:
    def __init__(self, in_dim, out_dim, nonlinear=True):
        self.neurons = [Neuron(in_dim, nonlinear) for _ in range(out_dim)]

    def __call__(self, x):
        return [n(x) for n in self.neurons]

    def parameters(self):
        return [p for n in self.neurons for p in n.parameters()]


class MLP:
    """Fully connected network. Every layer but the last is followed by a relu."""
    def __init__(self, dims):
        n = len(dims) - 1
        self.layers = [Layer(dims[i], dims[i+1], nonlinear=i != n - 1) for i in range(n)]

    def __call__(self, x):
        for layer in self.layers:
            x = layer(x)
        return x

    def parameters(self):
        return [p for layer in self.layers for p in layer.parameters()]

    def zero_grad(self):
        for p in self.parameters():
            p.zero_grad()

    def apply_gradient_step(self, lr):
        for p in self.parameters():
            p.apply_gradient_step(lr)

    def __repr__(self):
        lines = ['MLP:']
        for layer in self.layers:
            lines.append('Layer:')
            lines.extend(repr(n) for n in layer.neurons)
        return '\n'.join(lines)


def loss(model, preds, y, alpha=1e-4):
    """
    Max-margin (hinge) loss averaged over the batch, plus L2 regularization.
    Returns (total_loss, accuracy); labels are expected in {-1, 1}.
    """
    losses = [(1 + -float(yi) * pi).relu() for yi, pi in zip(y, preds)]
    data_loss = sum(losses) * (1.0 / len(losses))
    reg_loss = alpha * sum(p * p for p in model.parameters())
    total = data_loss + reg_loss
    acc = sum((yi > 0) == (pi.val > 0) for yi, pi in zip(y, preds)) / len(preds)
    return total, acc
