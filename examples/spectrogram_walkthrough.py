"""Example script for inspecting a recording before source reconstruction.

Plots the channel-averaged spectrogram of the gradiometers with and without
bad segments, then the power of a virtual sensor in motor cortex.
"""

import mne
import numpy as np
from scipy import signal
import matplotlib.pyplot as plt

import osltools

raw_file = "/data/wakeman_henson/preproc/sub-01_run-01_meg_preproc_raw.fif"
raw = mne.io.read_raw_fif(raw_file, preload=True)

#%% Spectrograms

fig, axes = plt.subplots(1, 2, figsize=(12, 4))
osltools.spectrogram.plot_spectrogram(raw, chantype="MEGPLANAR", ax=axes[0])
axes[0].set_title("All data")
osltools.spectrogram.plot_spectrogram(raw, chantype="MEGPLANAR", cut_badsegments=True, ax=axes[1])
axes[1].set_title("Bad segments removed")

#%% Sensor covariance

picks = osltools.utils.pick_chantype(raw.info, "MEGPLANAR")
C, M = osltools.covariance.cov(raw, picks=picks)
print("Covariance of {0} gradiometers from {1} good samples".format(C.shape[0], M))

#%% Virtual sensor

mni_coords = np.array([[-38, -22, 56]])
fwd = osltools.source_recon.make_forward_model(
    raw.info,
    mni_coords,
    trans="/data/wakeman_henson/coreg/sub-01/sub-01-trans.fif",
    bem="/data/wakeman_henson/coreg/sub-01/sub-01-bem-sol.fif",
)
montage = osltools.source_recon.inverse_model(
    raw, mni_coords, fwd, options={"modalities": ["MEGPLANAR"], "dirname": "/data/wakeman_henson/bf"}
)
vs = osltools.source_recon.apply_montage(raw, montage)

F, T, S = signal.spectrogram(vs.get_data()[0], fs=vs.info["sfreq"], window="hamming", nperseg=512, noverlap=384, nfft=1024)
plt.figure()
plt.pcolormesh(T, F, 10 * np.log10(S), shading="auto")
plt.xlabel("time (s)")
plt.ylabel("frequency (Hz)")
plt.show()
