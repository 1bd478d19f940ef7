"""
Reconstruct synthetic three beam SIM images of randomly placed beads.
"""
import time
import datetime
from pathlib import Path
import numpy as np
import matplotlib.pyplot as plt
from simrecon.analysis.otf import OtfModel
from simrecon.analysis.sim_params import IlluminationParameters, DirectionParameters
from simrecon.analysis.simulate import get_ground_truth_beads, get_simulated_sim_imgs
from simrecon.analysis.pipeline import SimReconstruction

tstamp = datetime.datetime.now().strftime('%Y_%m_%d_%H;%M;%S')
root_dir = Path("data")

# ############################################
# physical parameters
# ############################################
dxy = 0.08
na = 1.2
wavelength = 0.5
nxy = 512
nslices = 2

otf = OtfModel.from_estimate(na, wavelength, otf_correction=0.3)

# ############################################
# ground truth pattern parameters
# ############################################
geometry = IlluminationParameters(nbands=3,
                                  ndirs=3,
                                  nphases=5,
                                  size=nxy,
                                  pixel_size=dxy,
                                  wiener_parameter=0.05,
                                  apo_cutoff=2.,
                                  apo_bend=0.9)

angles = np.array([15, 75, 135]) * np.pi / 180
frq = 0.45 * otf.fmax
params_gt = geometry.with_directions([DirectionParameters((frq * np.cos(a), frq * np.sin(a)),
                                                          (1., 0.8, 0.6),
                                                          phase_offset=0.5 * ii)
                                      for ii, a in enumerate(angles)])

# ############################################
# synthetic SIM images, ordered [slice][direction][phase]
# ############################################
stack = []
for ii in range(nslices):
    gt = get_ground_truth_beads(2 * nxy, dxy / 2, nbeads=500, seed=ii)
    imgs = get_simulated_sim_imgs(gt, params_gt, otf, upsample_factor=2, snr_db=20, seed=ii)
    stack.append(100 * imgs + 100)
stack = np.concatenate(stack, axis=0).reshape((-1, nxy, nxy))

# ############################################
# SIM reconstruction
# ############################################
tstart = time.perf_counter()

recon = SimReconstruction(geometry,
                          otf,
                          background=100.,
                          estimate_parameters=True)

results = recon.run(stack)
recon.print_parameters()
recon.print_log(f"true frequencies (1/um) = {np.array2string(params_gt.frqs, precision=3)}")

# save reconstruction results
recon.save_imgs(root_dir / f"{tstamp:s}_sim_reconstruction_simulated")

# plot results
recon.plot_reconstruction(results[0], figsize=(20, 10))

print(f"reconstructing images, plotting diagnostics, and saving results took {time.perf_counter() - tstart:.2f}s")
plt.show()
