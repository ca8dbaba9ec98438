"""
Real spherical harmonics up to degree 4.

Basis values follow Sloan's closed form ("Efficient Spherical Harmonic
Evaluation", JCGT 2013), written in terms of the recurrences

    fC1 = x^2 - y^2        fS1 = 2xy
    fC2 = x fC1 - y fS1    fS2 = x fS1 + y fC1
    fC3 = x fC2 - y fS2    fS3 = x fS2 + y fC2

whose partials are again multiples of the previous order
(dfC2/dx = 3 fC1, dfC2/dy = -3 fS1, dfS2/dx = 3 fS1, dfS2/dy = 3 fC1, and
with 4 instead of 3 for the third order). Coefficients of one splat are
(degree + 1)^2 consecutive vec3 in a flat array.
"""
import numpy as np
import warp as wp

SH_C0 = wp.constant(0.2820947917738781)
SH_C1 = wp.constant(0.48860251190292)

# Degree 2
SH_C2_A = wp.constant(-1.092548430592079)
SH_C2_B = wp.constant(0.5462742152960395)
SH_C2_Z2 = wp.constant(0.9461746957575601)
SH_C2_K = wp.constant(0.3153915652525201)

# Degree 3
SH_C3_Z2 = wp.constant(-2.285228997322329)
SH_C3_K = wp.constant(0.4570457994644658)
SH_C3_B = wp.constant(1.445305721320277)
SH_C3_C = wp.constant(-0.5900435899266435)
SH_C3_Z3 = wp.constant(1.865881662950577)
SH_C3_Z1 = wp.constant(1.119528997770346)

# Degree 4
SH_C4_Z3 = wp.constant(-4.683325804901025)
SH_C4_Z1 = wp.constant(2.007139630671868)
SH_C4_B2 = wp.constant(3.31161143515146)
SH_C4_BK = wp.constant(0.47308734787878)
SH_C4_C = wp.constant(-1.770130769779931)
SH_C4_D = wp.constant(0.6258357354491763)
SH_C4_E1 = wp.constant(1.984313483298443)
SH_C4_E2 = wp.constant(1.006230589874905)


def sh_coeffs_for_degree(degree):
    return (degree + 1) ** 2


def sh_degree_from_coeffs(num_coeffs):
    for degree in range(5):
        if sh_coeffs_for_degree(degree) == num_coeffs:
            return degree
    raise ValueError(f"Unsupported number of SH coefficients: {num_coeffs}")


def channel_to_sh(value):
    return (value - 0.5) / float(SH_C0)


def rgb_to_sh(rgb):
    """DC coefficients that reproduce ``rgb`` from every view direction."""
    return channel_to_sh(np.asarray(rgb, dtype=np.float32))


def linear_to_srgb(x):
    x = np.asarray(x, dtype=np.float32)
    return np.where(x <= 0.0031308, x * 12.92, 1.055 * np.power(np.maximum(x, 0.0031308), 1.0 / 2.4) - 0.055)


@wp.func
def sh_to_color(coeffs: wp.array(dtype=wp.vec3), base: int, degree: int, d: wp.vec3) -> wp.vec3:
    """Evaluate the SH expansion of one splat along unit direction ``d``."""
    color = SH_C0 * coeffs[base]
    if degree == 0:
        return color

    x = d[0]
    y = d[1]
    z = d[2]
    color = color + SH_C1 * (-y * coeffs[base + 1] + z * coeffs[base + 2] - x * coeffs[base + 3])
    if degree == 1:
        return color

    z2 = z * z
    t0b = SH_C2_A * z
    fc1 = x * x - y * y
    fs1 = 2.0 * x * y
    b6 = SH_C2_Z2 * z2 - SH_C2_K
    color = (color
             + (SH_C2_B * fs1) * coeffs[base + 4]
             + (t0b * y) * coeffs[base + 5]
             + b6 * coeffs[base + 6]
             + (t0b * x) * coeffs[base + 7]
             + (SH_C2_B * fc1) * coeffs[base + 8])
    if degree == 2:
        return color

    t0c = SH_C3_Z2 * z2 + SH_C3_K
    t1b = SH_C3_B * z
    fc2 = x * fc1 - y * fs1
    fs2 = x * fs1 + y * fc1
    b12 = z * (SH_C3_Z3 * z2 - SH_C3_Z1)
    color = (color
             + (SH_C3_C * fs2) * coeffs[base + 9]
             + (t1b * fs1) * coeffs[base + 10]
             + (t0c * y) * coeffs[base + 11]
             + b12 * coeffs[base + 12]
             + (t0c * x) * coeffs[base + 13]
             + (t1b * fc1) * coeffs[base + 14]
             + (SH_C3_C * fc2) * coeffs[base + 15])
    if degree == 3:
        return color

    t0d = z * (SH_C4_Z3 * z2 + SH_C4_Z1)
    t1c = SH_C4_B2 * z2 - SH_C4_BK
    t2b = SH_C4_C * z
    fc3 = x * fc2 - y * fs2
    fs3 = x * fs2 + y * fc2
    color = (color
             + (SH_C4_D * fs3) * coeffs[base + 16]
             + (t2b * fs2) * coeffs[base + 17]
             + (t1c * fs1) * coeffs[base + 18]
             + (t0d * y) * coeffs[base + 19]
             + (SH_C4_E1 * z * b12 - SH_C4_E2 * b6) * coeffs[base + 20]
             + (t0d * x) * coeffs[base + 21]
             + (t1c * fc1) * coeffs[base + 22]
             + (t2b * fc2) * coeffs[base + 23]
             + (SH_C4_D * fc3) * coeffs[base + 24])
    return color


@wp.func
def sh_backward(
    coeffs: wp.array(dtype=wp.vec3),
    base: int,
    degree: int,
    d: wp.vec3,
    v_color: wp.vec3,
    v_coeffs: wp.array(dtype=wp.vec3),
) -> wp.vec3:
    """Write d(loss)/d(coeff) = basis * v_color and return d(loss)/d(d).

    ``d`` is the normalized view direction; the caller chains the result
    through the normalization.
    """
    v_coeffs[base] = SH_C0 * v_color
    v_d = wp.vec3(0.0, 0.0, 0.0)
    if degree == 0:
        return v_d

    x = d[0]
    y = d[1]
    z = d[2]

    v_coeffs[base + 1] = (-SH_C1 * y) * v_color
    v_coeffs[base + 2] = (SH_C1 * z) * v_color
    v_coeffs[base + 3] = (-SH_C1 * x) * v_color

    # projections of the color gradient on each coefficient
    g1 = wp.dot(v_color, coeffs[base + 1])
    g2 = wp.dot(v_color, coeffs[base + 2])
    g3 = wp.dot(v_color, coeffs[base + 3])
    v_d = v_d + SH_C1 * wp.vec3(-g3, -g1, g2)
    if degree == 1:
        return v_d

    z2 = z * z
    t0b = SH_C2_A * z
    fc1 = x * x - y * y
    fs1 = 2.0 * x * y
    b6 = SH_C2_Z2 * z2 - SH_C2_K

    v_coeffs[base + 4] = (SH_C2_B * fs1) * v_color
    v_coeffs[base + 5] = (t0b * y) * v_color
    v_coeffs[base + 6] = b6 * v_color
    v_coeffs[base + 7] = (t0b * x) * v_color
    v_coeffs[base + 8] = (SH_C2_B * fc1) * v_color

    g4 = wp.dot(v_color, coeffs[base + 4])
    g5 = wp.dot(v_color, coeffs[base + 5])
    g6 = wp.dot(v_color, coeffs[base + 6])
    g7 = wp.dot(v_color, coeffs[base + 7])
    g8 = wp.dot(v_color, coeffs[base + 8])
    v_d = v_d + wp.vec3(
        SH_C2_B * (2.0 * y * g4 + 2.0 * x * g8) + t0b * g7,
        SH_C2_B * (2.0 * x * g4 - 2.0 * y * g8) + t0b * g5,
        SH_C2_A * (y * g5 + x * g7) + 2.0 * SH_C2_Z2 * z * g6,
    )
    if degree == 2:
        return v_d

    t0c = SH_C3_Z2 * z2 + SH_C3_K
    dt0c = 2.0 * SH_C3_Z2 * z
    t1b = SH_C3_B * z
    fc2 = x * fc1 - y * fs1
    fs2 = x * fs1 + y * fc1
    b12 = z * (SH_C3_Z3 * z2 - SH_C3_Z1)
    db12 = 3.0 * SH_C3_Z3 * z2 - SH_C3_Z1

    v_coeffs[base + 9] = (SH_C3_C * fs2) * v_color
    v_coeffs[base + 10] = (t1b * fs1) * v_color
    v_coeffs[base + 11] = (t0c * y) * v_color
    v_coeffs[base + 12] = b12 * v_color
    v_coeffs[base + 13] = (t0c * x) * v_color
    v_coeffs[base + 14] = (t1b * fc1) * v_color
    v_coeffs[base + 15] = (SH_C3_C * fc2) * v_color

    g9 = wp.dot(v_color, coeffs[base + 9])
    g10 = wp.dot(v_color, coeffs[base + 10])
    g11 = wp.dot(v_color, coeffs[base + 11])
    g12 = wp.dot(v_color, coeffs[base + 12])
    g13 = wp.dot(v_color, coeffs[base + 13])
    g14 = wp.dot(v_color, coeffs[base + 14])
    g15 = wp.dot(v_color, coeffs[base + 15])
    v_d = v_d + wp.vec3(
        SH_C3_C * (3.0 * fs1 * g9 + 3.0 * fc1 * g15)
        + t1b * (2.0 * y * g10 + 2.0 * x * g14) + t0c * g13,
        SH_C3_C * (3.0 * fc1 * g9 - 3.0 * fs1 * g15)
        + t1b * (2.0 * x * g10 - 2.0 * y * g14) + t0c * g11,
        SH_C3_B * (fs1 * g10 + fc1 * g14) + dt0c * (y * g11 + x * g13) + db12 * g12,
    )
    if degree == 3:
        return v_d

    t0d = z * (SH_C4_Z3 * z2 + SH_C4_Z1)
    dt0d = 3.0 * SH_C4_Z3 * z2 + SH_C4_Z1
    t1c = SH_C4_B2 * z2 - SH_C4_BK
    dt1c = 2.0 * SH_C4_B2 * z
    t2b = SH_C4_C * z
    fc3 = x * fc2 - y * fs2
    fs3 = x * fs2 + y * fc2
    b20 = SH_C4_E1 * z * b12 - SH_C4_E2 * b6
    db20 = SH_C4_E1 * (b12 + z * db12) - SH_C4_E2 * 2.0 * SH_C2_Z2 * z

    v_coeffs[base + 16] = (SH_C4_D * fs3) * v_color
    v_coeffs[base + 17] = (t2b * fs2) * v_color
    v_coeffs[base + 18] = (t1c * fs1) * v_color
    v_coeffs[base + 19] = (t0d * y) * v_color
    v_coeffs[base + 20] = b20 * v_color
    v_coeffs[base + 21] = (t0d * x) * v_color
    v_coeffs[base + 22] = (t1c * fc1) * v_color
    v_coeffs[base + 23] = (t2b * fc2) * v_color
    v_coeffs[base + 24] = (SH_C4_D * fc3) * v_color

    g16 = wp.dot(v_color, coeffs[base + 16])
    g17 = wp.dot(v_color, coeffs[base + 17])
    g18 = wp.dot(v_color, coeffs[base + 18])
    g19 = wp.dot(v_color, coeffs[base + 19])
    g20 = wp.dot(v_color, coeffs[base + 20])
    g21 = wp.dot(v_color, coeffs[base + 21])
    g22 = wp.dot(v_color, coeffs[base + 22])
    g23 = wp.dot(v_color, coeffs[base + 23])
    g24 = wp.dot(v_color, coeffs[base + 24])
    v_d = v_d + wp.vec3(
        SH_C4_D * (4.0 * fs2 * g16 + 4.0 * fc2 * g24)
        + t2b * (3.0 * fs1 * g17 + 3.0 * fc1 * g23)
        + t1c * (2.0 * y * g18 + 2.0 * x * g22) + t0d * g21,
        SH_C4_D * (4.0 * fc2 * g16 - 4.0 * fs2 * g24)
        + t2b * (3.0 * fc1 * g17 - 3.0 * fs1 * g23)
        + t1c * (2.0 * x * g18 - 2.0 * y * g22) + t0d * g19,
        SH_C4_C * (fs2 * g17 + fc2 * g23) + dt1c * (fs1 * g18 + fc1 * g22)
        + dt0d * (y * g19 + x * g21) + db20 * g20,
    )
    return v_d
