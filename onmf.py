#!/usr/bin/env python3

# Import librairies
import numpy as np
import scipy.linalg as scla
import warnings

class DimensionMismatch(ValueError):
	"""Raised when a matrix shape disagrees with the fixed dimensions of a factorization."""
	pass

###################
#      Tools      #
###################

def _as_generator(rng):
	"""Return a random source able to draw uniform values from [0, 1).

	Accepts a numpy Generator, a legacy RandomState, an integer seed or None (fresh unseeded Generator).
	The global numpy random state is never used."""

	if isinstance(rng, (np.random.Generator, np.random.RandomState)):
		return(rng)
	return(np.random.default_rng(rng))

def random01(shape, rng, dtype=np.float64):
	"""Draw a matrix of independent values in (0, 1].

	Parameters:
		shape (tuple of int): Shape of the matrix to draw.

		rng (Generator, RandomState or int): Random source (an integer is used as a seed).

		dtype (optional, numpy floating dtype): Type of the returned matrix.
			Default: np.float64

	Returns:
		matrix (2D array)

	Computational details:
		Entries are filled in row-major (C) order, one draw u in [0, 1) per entry, and stored as 1 - u.
	"""

	values = _as_generator(rng).random(shape)
	np.subtract(1, values, out=values)

	return(values.astype(dtype, copy=False))

def gemm_numpy(a, b, out, trans_a=False, trans_b=False):
	"""Compute op(a).op(b) into the preallocated C-contiguous `out` matrix, using numpy.dot"""

	if trans_a:
		a = a.T
	if trans_b:
		b = b.T
	np.dot(a, b, out=out)

	return(out)

def gemm_blas(a, b, out, trans_a=False, trans_b=False):
	"""Compute op(a).op(b) into the preallocated C-contiguous `out` matrix, using BLAS ?gemm.

	Computational details:
		BLAS works on Fortran-ordered storage, and tr(out) is the Fortran view of `out`.
		Therefore tr(out) = tr(op(b)).tr(op(a)) is computed directly in place.
	"""

	# Empty products: ?gemm rejects zero-sized operands
	inner = a.shape[0] if trans_a else a.shape[1]
	if out.size == 0 or inner == 0:
		out.fill(0)
		return(out)

	gemm = scla.get_blas_funcs('gemm', (a, b, out))
	result = gemm(1., b.T, a.T, beta=0., c=out.T, trans_a=int(trans_b), trans_b=int(trans_a), overwrite_c=1)
	if not np.may_share_memory(result, out):
		out[...] = result.T

	return(out)

def _check_nonnegative(matrix, name):
	if not np.all(np.isfinite(matrix)):
		raise ValueError('{} contains non-finite entries'.format(name))
	if np.any(matrix < 0):
		raise ValueError('{} contains negative entries'.format(name))

def _check_alpha(alpha):
	if not np.isfinite(alpha) or alpha < 0:
		raise ValueError('alpha must be a finite non-negative number, got {!r}'.format(alpha))

class MultiplicativeUpdate(object):
	"""One multiplicative update step of S ≈ W.H with orthogonality penalty, on preallocated buffers."""
	###################
	#    Notations    #
	###################
	# H		<=> hidden (nhidden x nobserved)
	# W		<=> weights (nsamples x nhidden)
	# S		<=> samples (nsamples x nobserved)
	# α		<=> alpha (orthogonality penalty weight)
	# Γ		<=> self.gamma (nhidden x nhidden, α off the diagonal, 0 on it)
	# A₀		<=> hidden_dividend_prior (accumulated tr(W).S of previous batches, optional)
	# G₀		<=> weights_gram_prior (accumulated tr(W).W of previous batches, optional)
	# ε		<=> self.tiny (minimum positive value of the dtype)
	# n		= nsamples
	# m		= nobserved
	# k		= nhidden

	def __init__(self, nhidden, nobserved, nsamples, dtype=np.float64, gemm=None):
		self.dtype = np.dtype(dtype)
		self.tiny = np.finfo(self.dtype).tiny
		self.gemm = gemm_numpy if gemm is None else gemm

		# Weights-shaped buffers
		self.weights_dividend = np.empty((nsamples, nhidden), dtype=self.dtype) # S.tr(H)
		self.weights_divisor = np.empty((nsamples, nhidden), dtype=self.dtype) # W.H.tr(H)
		self.weights_mask = np.empty((nsamples, nhidden), dtype=bool)

		# Hidden-shaped buffers
		self.hidden_dividend = np.empty((nhidden, nobserved), dtype=self.dtype) # tr(W).S
		self.hidden_divisor = np.empty((nhidden, nobserved), dtype=self.dtype) # tr(W).W.H + Γ.H
		self.gamma_hidden = np.empty((nhidden, nobserved), dtype=self.dtype) # Γ.H
		self.hidden_mask = np.empty((nhidden, nobserved), dtype=bool)

		# Gram buffers
		self.hidden_gram = np.empty((nhidden, nhidden), dtype=self.dtype) # H.tr(H)
		self.weights_gram = np.empty((nhidden, nhidden), dtype=self.dtype) # tr(W).W
		self.gamma = np.zeros((nhidden, nhidden), dtype=self.dtype)
		self._alpha = 0.

	@property
	def shape(self):
		"""Return (nhidden, nobserved, nsamples) handled by these buffers"""
		return(self.hidden_dividend.shape + self.weights_dividend.shape[:1])

	def _update_gamma(self, alpha):
		if alpha != self._alpha:
			self.gamma.fill(alpha)
			np.fill_diagonal(self.gamma, 0)
			self._alpha = alpha

	def _apply(self, factor, dividend, divisor, mask):
		"""Update `factor` in place: factor * dividend / divisor, avoiding zero divisors and zero results"""

		# Substitute zero divisors with ε
		np.equal(divisor, 0, out=mask)
		np.copyto(divisor, self.tiny, where=mask)

		# Multiplicative update
		np.multiply(factor, dividend, out=factor)
		np.divide(factor, divisor, out=factor)

		# Nudge vanished entries back to ε
		np.equal(factor, 0, out=mask)
		np.copyto(factor, self.tiny, where=mask)

	def step(self, hidden, weights, samples, alpha, hidden_dividend_prior=None, weights_gram_prior=None):
		"""Perform one multiplicative update of `hidden` and `weights`, in place.

		Parameters:
			self (MultiplicativeUpdate object): Buffers for the current shapes.

			hidden (2D array): Hidden matrix H, updated in place.

			weights (2D array): Weights matrix W, updated in place.

			samples (2D array): Samples matrix S, read only.

			alpha (float): Orthogonality penalty weight α.

			hidden_dividend_prior (optional, 2D array): Added to tr(W).S in the update of H.
				Default: None

			weights_gram_prior (optional, 2D array): Added to tr(W).W in the update of H.
				Default: None

		Computational details:
			W_new = W * S.tr(H) / W.H.tr(H)
			H_new = H * (A₀ + tr(W_new).S) / ((G₀ + tr(W_new).W_new).H + Γ.H)

			Weights are refreshed from the current H first, then H is refreshed from the new weights.
		"""

		assert(hidden.shape + weights.shape[:1] == self.shape)
		gemm = self.gemm

		# Weights update: W * S.tr(H) / W.(H.tr(H))
		# Cost: time: O(nmk+mk²+nk²) ; space: None (preallocated)
		gemm(samples, hidden, self.weights_dividend, trans_b=True)
		gemm(hidden, hidden, self.hidden_gram, trans_b=True)
		gemm(weights, self.hidden_gram, self.weights_divisor)
		self._apply(weights, self.weights_dividend, self.weights_divisor, self.weights_mask)

		# Hidden update from the new weights: H * (A₀ + tr(W).S) / ((G₀ + tr(W).W).H + Γ.H)
		# Cost: time: O(nmk+nk²+mk²) ; space: None (preallocated)
		gemm(weights, samples, self.hidden_dividend, trans_a=True)
		if hidden_dividend_prior is not None:
			np.add(self.hidden_dividend, hidden_dividend_prior, out=self.hidden_dividend)
		gemm(weights, weights, self.weights_gram, trans_a=True)
		if weights_gram_prior is not None:
			np.add(self.weights_gram, weights_gram_prior, out=self.weights_gram)
		gemm(self.weights_gram, hidden, self.hidden_divisor)
		if alpha:
			self._update_gamma(alpha)
			gemm(self.gamma, hidden, self.gamma_hidden)
			np.add(self.hidden_divisor, self.gamma_hidden, out=self.hidden_divisor)
		self._apply(hidden, self.hidden_dividend, self.hidden_divisor, self.hidden_mask)

class OrthogonalNMF(object):
	"""Nonnegative matrix factorization S ≈ W.H with an orthogonality penalty on H, refined one step per call."""
	###################
	#    Notations    #
	###################
	# H		<=> self.hidden (maps hidden variables, one per row, to observed variables, one per column)
	# W		<=> self.weights (maps samples, one per row, to hidden variables, one per column)
	# S		<=> samples (one sample per row, one observed variable per column)
	# α		<=> alpha (orthogonality penalty weight)

	def __init__(self, hidden, weights, gemm=None):
		hidden = np.asarray(hidden)
		weights = np.asarray(weights)
		dtype = np.result_type(hidden.dtype, weights.dtype, np.float32) # Floating type able to hold both factors
		self.hidden = np.array(hidden, dtype=dtype, order='C')
		self.weights = np.array(weights, dtype=dtype, order='C')

		if self.hidden.ndim != 2 or self.weights.ndim != 2:
			raise DimensionMismatch('hidden and weights must be 2D matrices, got shapes {} and {}'.format(self.hidden.shape, self.weights.shape))
		if self.weights.shape[1] != self.hidden.shape[0]:
			raise DimensionMismatch('weights has {} columns but hidden has {} rows'.format(self.weights.shape[1], self.hidden.shape[0]))
		_check_nonnegative(self.hidden, 'hidden')
		_check_nonnegative(self.weights, 'weights')

		# Factors must stay strictly positive for the multiplicative updates
		tiny = np.finfo(dtype).tiny
		for factor in self.hidden, self.weights:
			if np.any(factor == 0):
				warnings.warn('Initial factors contain zero entries, replaced by the smallest positive value.')
				factor[factor == 0] = tiny

		self.updater = MultiplicativeUpdate(self.nhidden, self.nobserved, self.nsamples, dtype=dtype, gemm=gemm)

	@classmethod
	def init_random01(cls, nhidden, nobserved, nsamples, rng, dtype=np.float64, gemm=None):
		"""Build a factorization with hidden then weights drawn uniformly from (0, 1].

		Parameters:
			nhidden (int): Number of hidden variables.

			nobserved (int): Number of observed variables.

			nsamples (int): Number of samples.

			rng (Generator, RandomState or int): Random source (an integer is used as a seed).

		Returns:
			model (OrthogonalNMF)
		"""

		rng = _as_generator(rng)
		hidden = random01((nhidden, nobserved), rng, dtype=dtype)
		weights = random01((nsamples, nhidden), rng, dtype=dtype)

		return(cls(hidden, weights, gemm=gemm))

	@property
	def nobserved(self):
		"""Number of observed variables"""
		return(self.hidden.shape[1])

	@property
	def nhidden(self):
		"""Number of hidden variables"""
		return(self.hidden.shape[0])

	@property
	def nsamples(self):
		"""Number of samples"""
		return(self.weights.shape[0])

	@property
	def dtype(self):
		return(self.hidden.dtype)

	def _check_samples(self, samples):
		samples = np.asarray(samples, dtype=self.dtype)
		if samples.shape != (self.nsamples, self.nobserved):
			raise DimensionMismatch('expected samples of shape {}, got {}'.format((self.nsamples, self.nobserved), samples.shape))
		_check_nonnegative(samples, 'samples')
		return(samples)

	def iterate(self, alpha, samples):
		"""Refine the factorization by one multiplicative update step.

		Parameters:
			self (OrthogonalNMF object): Factorization to update.

			alpha (float): Weight of the orthogonality penalty on the rows of H (0 disables it).

			samples (2D array): Samples matrix S.
				Notes: expected shape (nsamples, nobserved), with finite non-negative entries

		Returns:
			None
		"""

		samples = self._check_samples(samples)
		_check_alpha(alpha)

		# Cost: time: O(nmk+nk²+mk²) ; space: None (preallocated)
		self.updater.step(self.hidden, self.weights, samples, alpha)

	def reconstruction(self):
		"""Return the reconstructed samples W.H"""
		return(np.dot(self.weights, self.hidden))

	def reconstruction_error(self, samples):
		"""Return the Frobenius norm of W.H - S"""
		samples = self._check_samples(samples)
		return(scla.norm(self.reconstruction() - samples))

	def hidden_overlap(self):
		"""Return the sum of the off-diagonal entries of H.tr(H) (0 for orthogonal hidden rows)"""
		hidden_gram = np.dot(self.hidden, self.hidden.T)
		return(hidden_gram.sum() - np.trace(hidden_gram))

class OnlineNMF(object):
	"""Streaming nonnegative matrix factorization, fed with new observed columns over time.

	Use it by repeatedly calling `update` with data and inspecting `hidden` and `weights`.
	The hidden matrix keeps its size, while the weights matrix gains one row per new sample.
	"""
	###################
	#    Notations    #
	###################
	# H		<=> self.hidden (nhidden x nobserved, constant size, changes on every update)
	# W		<=> self.weights (nsamples x nhidden, grows on every update)
	# B		<=> tr(new_observed_columns) (new batch, one sample per row)
	# W_B		<=> new_weights (rows of W appended for the new batch)
	# A		<=> self.hidden_dividend_history = Σ λ^age.tr(W_B).B
	# G		<=> self.weights_gram_history = Σ λ^age.tr(W_B).W_B
	# λ		<=> self.forgetting_factor
	# α		<=> self.alpha

	def __init__(self, nobserved, nhidden, alpha=0., iterations=50, forgetting_factor=1., rng=None, dtype=np.float64, gemm=None):
		"""Build an online factorization finding `nhidden` hidden variables in columns of `nobserved` variables.

		Parameters:
			nobserved (int): Number of observed variables (rows of each new batch).

			nhidden (int): Number of hidden variables to find.

			alpha (optional, float): Weight of the orthogonality penalty on the rows of H.
				Default: 0

			iterations (optional, int): Multiplicative update steps performed per new batch.
				Default: 50

			forgetting_factor (optional, float in [0, 1]): Decay applied to previous batches evidence at each update.
				Note: 0 only keeps the newest batch, 1 weights every batch equally.
				Default: 1

			rng (optional, Generator, RandomState or int): Random source for initial values.
				Default: None (unseeded)
		"""

		if nobserved < 1 or nhidden < 1:
			raise ValueError('nobserved and nhidden must be positive, got {} and {}'.format(nobserved, nhidden))
		if iterations < 1:
			raise ValueError('iterations must be positive, got {}'.format(iterations))
		if not 0 <= forgetting_factor <= 1:
			raise ValueError('forgetting_factor must lie in [0, 1], got {}'.format(forgetting_factor))
		_check_alpha(alpha)

		self.hidden = np.zeros((nhidden, nobserved), dtype=dtype)
		self.weights = np.zeros((0, nhidden), dtype=dtype)

		# Accumulated evidence of previous batches
		self.hidden_dividend_history = np.zeros((nhidden, nobserved), dtype=dtype)
		self.weights_gram_history = np.zeros((nhidden, nhidden), dtype=dtype)

		# Algorithm parameters
		self.alpha = alpha
		self.iterations = iterations
		self.forgetting_factor = forgetting_factor
		self.rng = _as_generator(rng)
		self.gemm = gemm
		self.updater = None

	@property
	def nobserved(self):
		"""Number of observed variables"""
		return(self.hidden.shape[1])

	@property
	def nhidden(self):
		"""Number of hidden variables"""
		return(self.hidden.shape[0])

	@property
	def nsamples(self):
		"""Number of samples seen so far"""
		return(self.weights.shape[0])

	def _get_updater(self, nnew):
		# Buffers are kept as long as batches keep the same size
		if self.updater is None or self.updater.shape[2] != nnew:
			self.updater = MultiplicativeUpdate(self.nhidden, self.nobserved, nnew, dtype=self.hidden.dtype, gemm=self.gemm)
		return(self.updater)

	def update(self, new_observed_columns):
		"""Update the factorization with a new batch of observed columns.

		Parameters:
			self (OnlineNMF object): Factorization to update.

			new_observed_columns (2D array): New samples, one per column.
				Notes: expected shape (nobserved, nnew); a 1D array of length nobserved is a single sample.

		Returns:
			new_weights (2D array): The nnew rows appended to the weights matrix.
		"""

		columns = np.asarray(new_observed_columns, dtype=self.hidden.dtype)
		if columns.ndim == 1:
			columns = columns[:, None]
		if columns.ndim != 2 or columns.shape[0] != self.nobserved:
			raise DimensionMismatch('expected {} observed variables per column, got shape {}'.format(self.nobserved, columns.shape))
		_check_nonnegative(columns, 'new_observed_columns')

		nnew = columns.shape[1]
		if nnew == 0:
			return(np.empty((0, self.nhidden), dtype=self.hidden.dtype))
		batch = np.ascontiguousarray(columns.T)

		# First recording: start from random hidden variables
		if self.nsamples == 0:
			self.hidden[...] = random01(self.hidden.shape, self.rng, dtype=self.hidden.dtype)
		new_weights = random01((nnew, self.nhidden), self.rng, dtype=self.hidden.dtype)

		# Decay previous evidence: λA and λG
		# Cost: time: O(mk+k²) ; space: O(mk+k²)
		hidden_dividend_prior = self.forgetting_factor*self.hidden_dividend_history
		weights_gram_prior = self.forgetting_factor*self.weights_gram_history

		# Warm-started multiplicative updates of H and W_B
		# Cost: time: O(iterations*(nmk+nk²+mk²)) ; space: O(nk+nm) (preallocated between batches of same size)
		updater = self._get_updater(nnew)
		for _ in range(self.iterations):
			updater.step(self.hidden, new_weights, batch, self.alpha, hidden_dividend_prior, weights_gram_prior)

		# Fold new batch into the evidence: A_new = λA + tr(W_B).B, G_new = λG + tr(W_B).W_B
		# Cost: time: O(nmk+nk²) ; space: O(mk+k²)
		self.hidden_dividend_history = hidden_dividend_prior + np.dot(new_weights.T, batch)
		self.weights_gram_history = weights_gram_prior + np.dot(new_weights.T, new_weights)

		# Update weights: W_new = (W/W_B)
		# Cost: time: O(nk) ; space: O(nk)
		tmp_array = np.empty((self.nsamples + nnew, self.nhidden), dtype=self.hidden.dtype)
		tmp_array[:-nnew] = self.weights
		tmp_array[-nnew:] = new_weights
		self.weights = tmp_array

		return(new_weights.copy())
